"""Core functionality for patchline.

- Configuration and shared types
- Download engine with resume and retry
- Version cache and installed-version checkpoint
- Version resolver and update orchestrator
"""
