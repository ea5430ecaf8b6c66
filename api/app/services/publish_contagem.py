"""
Accepts the counter, the sender and settings; returns an outcome.
Router translates outcome to HTTP status codes and content.
"""
from __future__ import annotations

import platform
from dataclasses import dataclass

from opentelemetry.context import Context

from api.app.config.settings import Settings
from api.app.core import SERVICE_NAME
from api.app.messaging.message_sender import MessageSender
from api.app.services.contador import Contador
from shared.contracts import ResultadoContador
from shared.messaging.exceptions import MessageTooLargeError


@dataclass(frozen=True)
class ContagemOutcome:
    """Result of publish_contagem.
    success=True => resultado and message_id set.
    success=False => error set; resultado is set because the counter was already incremented.
    """
    success: bool
    resultado: ResultadoContador | None = None
    message_id: str | None = None
    error: str | None = None
    too_large: bool = False


def build_resultado(valor_atual: int, mensagem: str) -> ResultadoContador:
    return ResultadoContador(
        valor_atual=valor_atual,
        producer=SERVICE_NAME,
        kernel=platform.platform(),
        framework=f"Python {platform.python_version()}",
        mensagem=mensagem,
    )


async def publish_contagem(
    contador: Contador,
    sender: MessageSender,
    settings: Settings,
    *,
    context: Context | None = None,
) -> ContagemOutcome:
    """Increment the counter and publish the snapshot to the configured queue."""
    resultado = build_resultado(contador.increment(), settings.mensagem_variavel)
    try:
        result = await sender.send(settings.queue_name, resultado, context=context)
    except MessageTooLargeError as e:
        return ContagemOutcome(success=False, resultado=resultado, error=str(e), too_large=True)
    except Exception as e:
        return ContagemOutcome(success=False, resultado=resultado, error=str(e))
    return ContagemOutcome(success=True, resultado=resultado, message_id=result.message_id)
