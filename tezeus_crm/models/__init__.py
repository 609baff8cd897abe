"""Modelos Pydantic do pipeline de mensagens.

Este módulo re-exporta todos os modelos para facilitar importações.
"""
from .messages import (
    SendMessageBody,
    HistoryFetch,
    MediaCallback,
    RelayStatusCallback,
)

__all__ = [
    "SendMessageBody",
    "HistoryFetch",
    "MediaCallback",
    "RelayStatusCallback",
]
