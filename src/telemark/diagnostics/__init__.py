"""Diagnostic channel for internal SDK failures."""

from telemark.diagnostics.channel import DiagnosticChannel

__all__ = ["DiagnosticChannel"]
