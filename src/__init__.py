"""
Perfana Grafana sync package.

Hosts the dashboard mirror sync, the auto-configuration engine that
provisions per-application dashboards from templates, the store adapters and
the service runtime. See README.md for usage.
"""

from .__version__ import __version__

__all__ = ["__version__"]
