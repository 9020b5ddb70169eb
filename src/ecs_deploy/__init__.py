"""ECS deployment: task definition mutation, registration, service rollout."""

__version__ = "1.0.0"
