"""Email-triage automation for intellectual-property case management."""

__version__ = "0.1.0"
