"""mailcache command-line interface.

What:
  Provide a Typer entry point for everyday cache operations: listing folders,
  synchronising a folder, searching, reporting cache statistics and
  inspecting what an operation mode permits.

Why:
  Operators run synchronisation from cron and poke at the cache by hand;
  both need the same configuration discovery and the same mode policy as
  library callers.

How:
  Each command loads the settings (optionally from ``--config``), applies a
  ``--mode`` override, opens the store through the registry, does its work
  and closes the store. Errors from the taxonomy are logged and turned into
  exit code ``1``.

Interfaces:
  ``app`` (Typer application), ``folders``, ``sync``, ``search``, ``stats``,
  ``mode``, :func:`main`.

Invariants & Safety:
  - Exit codes follow shell expectations (``0`` success, ``1`` failure).
  - Output lists message metadata only, never bodies.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import asdict
from typing import Iterator, Optional

import typer

from .config.loader import ConfigLoadError, load_settings
from .config.schema import StoreSettings
from .core.errors import MailCacheError
from .core.folder import READ_ONLY
from .core.manager import CacheManager
from .core.modes import OperationMode, capabilities_for
from .core.registry import close_store, open_store
from .core.search import SearchQuery
from .core.store import Store

app = typer.Typer(help="Local mail cache kept consistent with an IMAP mailbox")

LOGGER = logging.getLogger("mailcache.cli")

CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to the YAML configuration")
MODE_OPTION = typer.Option(None, "--mode", "-m", help="Override the configured operation mode")


def _settings(config: Optional[str], mode: Optional[str]) -> StoreSettings:
    settings = load_settings(config, reload=True)
    if mode:
        settings = settings.model_copy(update={"mode": OperationMode.parse(mode)})
    return settings


def _fail(exc: Exception) -> typer.Exit:
    LOGGER.error("command_failed error=%s", exc)
    typer.echo(f"error: {exc}", err=True)
    return typer.Exit(code=1)


@contextmanager
def _session(config: Optional[str], mode: Optional[str]) -> Iterator[Store]:
    try:
        settings = _settings(config, mode)
    except (ConfigLoadError, ValueError) as exc:
        raise _fail(exc) from exc
    store = open_store(settings)
    try:
        yield store
    except MailCacheError as exc:
        raise _fail(exc) from exc
    finally:
        close_store(settings)


@app.command("folders")
def folders(
    pattern: str = typer.Option("*", help="IMAP LIST pattern (% one level, * any depth)"),
    config: Optional[str] = CONFIG_OPTION,
    mode: Optional[str] = MODE_OPTION,
) -> None:
    """List cached (and, depending on the mode, server) folders."""

    with _session(config, mode) as store:
        for folder in store.list_folders(pattern):
            typer.echo(folder.path)


@app.command("sync")
def sync(
    folder: str = typer.Argument("INBOX", help="Folder to synchronise"),
    config: Optional[str] = CONFIG_OPTION,
    mode: Optional[str] = MODE_OPTION,
) -> None:
    """Fetch a folder from the server into the cache."""

    with _session(config, mode) as store:
        status = CacheManager(store).synchronize(folder)
        if not status.ok:
            raise _fail(MailCacheError(status.error or f"synchronisation of {folder} failed"))
        LOGGER.info("sync_completed folder=%s fetched=%s", status.folder, status.fetched)
        typer.echo(f"{status.folder}: {status.fetched} messages in {status.duration.total_seconds():.2f}s")


@app.command("search")
def search(
    folder: str = typer.Argument("INBOX", help="Folder to search"),
    subject: Optional[str] = typer.Option(None, help="Subject substring"),
    sender: Optional[str] = typer.Option(None, help="Sender substring"),
    body: Optional[str] = typer.Option(None, help="Body substring"),
    year: Optional[int] = typer.Option(None, help="Sent year"),
    unseen: bool = typer.Option(False, help="Only unread messages"),
    config: Optional[str] = CONFIG_OPTION,
    mode: Optional[str] = MODE_OPTION,
) -> None:
    """Search a folder and print one line per match."""

    query = SearchQuery(subject=subject, sender=sender, body=body, year=year, unseen=unseen)
    with _session(config, mode) as store:
        target = store.get_folder(folder)
        target.open(READ_ONLY)
        try:
            for message in target.search(query):
                sent = message.sent_date.strftime("%Y-%m-%d %H:%M") if message.sent_date else "-"
                typer.echo(f"{sent}\t{message.sender}\t{message.subject}")
        finally:
            target.close()


@app.command("stats")
def stats(
    config: Optional[str] = CONFIG_OPTION,
    mode: Optional[str] = MODE_OPTION,
) -> None:
    """Print cache statistics."""

    with _session(config, mode) as store:
        for key, value in CacheManager(store).statistics().as_dict().items():
            typer.echo(f"{key}: {value}")


@app.command("mode")
def mode(name: str = typer.Argument(..., help="Operation mode to describe")) -> None:
    """Show what an operation mode permits."""

    try:
        parsed = OperationMode.parse(name)
    except ValueError as exc:
        raise _fail(exc) from exc
    typer.echo(f"{parsed.value}: {parsed.description}")
    for key, value in asdict(capabilities_for(parsed)).items():
        typer.echo(f"  {key}: {'yes' if value else 'no'}")


def main() -> None:
    """Execute the Typer application entry point."""

    app()


if __name__ == "__main__":  # pragma: no cover
    main()
