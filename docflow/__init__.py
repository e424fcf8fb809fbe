"""docflow - configuration-driven workflow engine for document lifecycles"""

__version__ = "0.1.0"
