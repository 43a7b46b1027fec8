"""Core infrastructure for familycal: configuration, clock and health tracking."""
