"""refimage — imagem hermética das engines de referência (lynx, w3m, links2)."""

__version__ = "1.0.0"
