"""System registry: provisioning accounts, their credentials and bound points."""
