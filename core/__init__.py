"""
Core package for StreakGuard.

Contains the per-user StreakGuardEngine facade, the tagged request types
the UI sends it, the error taxonomy and the event bus. Zero UI dependencies.

Import submodules directly (core.engine, core.errors, ...); the tracking
modules depend on core.errors, so nothing is imported eagerly here.
"""
