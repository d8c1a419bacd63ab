"""Automation switchboard, audit log and generated credential history."""
