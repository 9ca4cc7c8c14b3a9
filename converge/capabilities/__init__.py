"""Capability backends: packages, services and the filesystem.

Backends are plain objects satisfying the protocols in ``base``; the
transaction and the diff engine only ever see those protocols.
"""
