"""Backend package for the Doppelganger simulation service.

This package contains the turn-based simulation engine, the session runner
that persists replay snapshots, compatibility scoring, and the API surface.
"""
