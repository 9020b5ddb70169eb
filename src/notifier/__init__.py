"""Review-request notifications: posts the security report on the pull request."""

__version__ = "1.0.0"
