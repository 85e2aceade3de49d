"""batchwarden: batch-job orchestration and resource governance engine."""

__version__ = "0.1.0"
