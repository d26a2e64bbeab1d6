"""Wave-based task dispatch to quota-bound remote workers."""

__version__ = "0.1.0"

__all__ = ["__version__"]
