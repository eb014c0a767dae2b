"""Dispatcher-side reconcilers, scheduler and runtime."""
