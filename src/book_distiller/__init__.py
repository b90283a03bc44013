"""Book distiller: multi-turn LLM distillation of long source documents."""

__version__ = "0.1.0"
