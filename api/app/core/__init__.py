"""Service-wide constants."""
SERVICE_NAME = "api-contagem"
