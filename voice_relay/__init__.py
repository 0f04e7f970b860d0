"""Voice chat backend: realtime relay and one-shot text -> speech."""

__version__ = "0.1.0"
