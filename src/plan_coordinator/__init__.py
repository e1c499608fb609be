"""Multi-agent task coordination over a shared issue-tracker plan."""

__version__ = "0.1.0"
