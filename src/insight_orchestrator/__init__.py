"""
insight-orchestrator — package root

File: src/insight_orchestrator/__init__.py

Purpose
- LLM orchestration core for call-quality evaluation, sentiment timelines and
  workflow-ordered tool mock generation.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

__version__ = "0.3.0"

__all__ = ["__version__"]
