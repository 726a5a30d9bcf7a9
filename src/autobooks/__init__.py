"""autobooks - agent orchestration and workflow execution core."""

__version__ = "0.1.0"
