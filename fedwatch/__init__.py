"""fedwatch — privacy-preserving federation telemetry for worker-node monitors."""

__version__ = "0.3.0"
