"""phiguard — PHI detection and de-identification for clinical text."""

__version__ = "0.1.0"
