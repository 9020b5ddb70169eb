"""Build & publish stage: image identity, ECR login, docker build and push."""

__version__ = "1.0.0"
