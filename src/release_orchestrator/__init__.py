"""
release-orchestrator: package root

File: src/release_orchestrator/__init__.py

Purpose
- Drive mobile/web app releases through Kickoff, Regression and Post-Regression on a
  recurring scheduling tick, with webhook and build-upload ingress.

Import boundary
- Importing the package must stay side-effect free: no config loading, no logging
  setup, no database access. Entry points live in ``release_orchestrator.main``.
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
