"""Household domain: member attribution, event normalization and the refresh lifecycle."""
