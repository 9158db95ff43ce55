"""Issue governor: decides which issues need an agent and queues the work."""

__version__ = "0.1.0"
