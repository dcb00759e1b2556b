"""Event routing and fan-out to stage transforms."""

from __future__ import annotations

from .invoker import HttpInvoker, InProcessInvoker, InvocationOutcome, Invoker, execute
from .local import LocalPipeline
from .orchestrator import DispatchReport, Orchestrator
from .routing import ROUTING_TABLE, classify, is_ignored, route

__all__ = [
    "DispatchReport",
    "HttpInvoker",
    "InProcessInvoker",
    "InvocationOutcome",
    "Invoker",
    "LocalPipeline",
    "Orchestrator",
    "ROUTING_TABLE",
    "classify",
    "execute",
    "is_ignored",
    "route",
]
