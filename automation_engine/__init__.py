"""Workflow automation engine: node-graph interpreter with durable waits."""

__version__ = "1.0.0"
