"""zen: asset library, credentials and task scaffolding."""

__version__ = "0.1.0"
