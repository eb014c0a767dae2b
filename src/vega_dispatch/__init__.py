"""Job scheduling and worker-pool coordination for distributed calculations."""

__version__ = "0.1.0"
