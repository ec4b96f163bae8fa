"""Smart-home control panel with natural-language device commands."""

__all__ = ["config", "logging", "models", "store", "state", "commands", "interpreter", "compression"]
__version__ = "0.1.0"
