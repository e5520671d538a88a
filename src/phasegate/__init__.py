"""
phasegate — package root

File: src/phasegate/__init__.py
Last updated: 2026-10-18

Purpose
- Quality-gated pipeline orchestration: ordered phases of checks, a gate
  verdict per phase, deployment checkpoints, and verified rollback.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
