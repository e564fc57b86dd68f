"""Subscription billing core: plans, sessions, lifecycle, billing and repair."""
