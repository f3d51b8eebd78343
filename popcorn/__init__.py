"""Asyncio application framework: a kernel starting modules in dependency order, an event bus, and a demo."""

__version__ = "0.1.0"

__all__ = ["attrs", "events", "bus", "kernel", "demo"]