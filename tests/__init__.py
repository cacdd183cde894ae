"""Test package for mailcache.

What:
  Marks ``tests`` as a package so pytest resolves ``tests.unit`` and
  ``tests.e2e`` consistently.

Invariants & Safety:
  - The file must remain side-effect free; shared setup lives in
    ``tests/conftest.py``.
"""
