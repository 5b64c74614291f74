"""Profiling and diagnostic endpoints."""

from __future__ import annotations

from dhtseek.observability.debug_http import DebugHTTPServer
from dhtseek.observability.profiler import CPUProfiler, cpu_profile

__all__ = ["CPUProfiler", "DebugHTTPServer", "cpu_profile"]
