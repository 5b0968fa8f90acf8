from .backend import InMemoryBackend

__all__ = ["InMemoryBackend"]
