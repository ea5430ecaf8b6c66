"""Payload exchanged between API Contagem and Worker Contagem."""
from __future__ import annotations

from pydantic import BaseModel, Field


class ResultadoContador(BaseModel):
    """Counter snapshot produced by the API on every GET /contador."""

    valor_atual: int = Field(..., ge=0)
    producer: str
    kernel: str = ""
    framework: str = ""
    mensagem: str = ""
