"""Configuration models for agentrun."""
