"""Machine health check controller: detects long-unhealthy nodes and remediates them"""

__version__ = "0.1.0"
