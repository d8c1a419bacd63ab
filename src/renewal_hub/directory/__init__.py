"""Best-effort mirror of systems and point bindings to the external directory."""
