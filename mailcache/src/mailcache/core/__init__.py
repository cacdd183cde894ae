"""Cache engine: mode policy, store, folder and message engines.

What:
  Hosts the pieces that decide, per operation, whether the cache or the
  server answers, and that keep the two consistent on writes.

Interfaces:
  - modes / errors / events: policy table, error taxonomy, change bus.
  - store / folder / message: the three engine objects.
  - connection: lazy remote session and handle resolution.
  - registry / manager: shared stores and maintenance jobs.

Invariants:
  - Submodules are imported explicitly; this package re-exports nothing so
    the IMAP layer can depend on ``core.errors`` without loading the engines.
"""
