"""Mnemo: resilient codebase intelligence over an unreliable analyzer."""

__version__ = "0.1.0"
