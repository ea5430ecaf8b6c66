"""Service-wide constants."""
SERVICE_NAME = "worker-contagem"
