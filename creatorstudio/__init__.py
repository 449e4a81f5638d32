"""Creator Studio backend: generation jobs, provider webhooks and credit billing."""

__version__ = "1.0.0"
