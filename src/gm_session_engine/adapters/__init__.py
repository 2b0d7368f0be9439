from .ollama import OllamaNarrationClient

__all__ = ["OllamaNarrationClient"]
