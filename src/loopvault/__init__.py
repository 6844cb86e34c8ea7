"""Git-backed context log and loop harness for autonomous coding agents."""

__version__ = "0.1.0"

__all__ = ["__version__"]
