"""rook - agentless runbook automation.

A runbook describes groups of hosts, reusable jobs and runs. rook builds a
validated model from it, compiles one immutable plan per targeted host and
sends each plan in a single message to a small executor process on the
target, streaming per-action results back.

Quick Start:
    from rook.builder import build_model
    from rook.compiler import PlanCompiler

    model = build_model("main.tr")
    compiled = PlanCompiler(model).compile_all()
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
