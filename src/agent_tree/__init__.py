"""Control plane for hierarchical multi-agent task pipelines."""

__version__ = "0.1.0"
