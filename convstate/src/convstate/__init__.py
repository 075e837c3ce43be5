"""
Module: convstate.__init__

What:
  Package root of the conversation state inference engine, which classifies
  business-to-customer message threads into an engagement lifecycle state.

Why:
  Callers (batch recomputation jobs, the CLI, tests) import the public
  subpackages by name; listing them here keeps that surface explicit.

Interfaces:
  - config: Runtime configuration models and the YAML loader.
  - core: Feature extraction, rule hits, resolver, AI contract and audit.
  - utils: Structured logging, identifiers and timestamp helpers.
"""

__all__ = [
    "config",
    "core",
    "utils",
]

__version__ = "0.1.0"
