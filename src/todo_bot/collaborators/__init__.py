"""Extraction and delivery collaborator implementations."""

from todo_bot.collaborators.apps_script import AppsScriptSink
from todo_bot.collaborators.base import (
    CollaboratorError,
    Extractor,
    PermanentCollaboratorError,
    Sink,
    TransientCollaboratorError,
)
from todo_bot.collaborators.local import JsonlSink, LineExtractor
from todo_bot.collaborators.openrouter import OpenRouterExtractor

__all__ = [
    "AppsScriptSink",
    "CollaboratorError",
    "Extractor",
    "JsonlSink",
    "LineExtractor",
    "OpenRouterExtractor",
    "PermanentCollaboratorError",
    "Sink",
    "TransientCollaboratorError",
]
