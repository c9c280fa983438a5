"""rfsd - ephemeral multi-user file-share rooms over Reticulum."""

__version__ = "0.1.0"
