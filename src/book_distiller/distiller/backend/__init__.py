"""Model transport implementations."""

from book_distiller.distiller.backend.base import (
    ArtifactIngestionError,
    Conversation,
    RemoteCallError,
    RemoteModelClient,
)
from book_distiller.distiller.backend.gemini_backend import GeminiModelClient
from book_distiller.distiller.backend.scripted_agent import ScriptedModelClient, TurnScript

__all__ = [
    "ArtifactIngestionError",
    "Conversation",
    "GeminiModelClient",
    "RemoteCallError",
    "RemoteModelClient",
    "ScriptedModelClient",
    "TurnScript",
]
