"""
API route modules.
"""

from biostream.api.routes import bandpower, health, outputs, pipeline

__all__ = ["bandpower", "health", "outputs", "pipeline"]
