"""
CLI interface for the concept graph.

Usage:
    memo-echo index ~/notes
    memo-echo associations ~/notes --note kafka.md
    memo-echo stats ~/notes
"""

import json
import os
import signal
import threading
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import MemoEcho
from .logging_config import configure_quiet_mode, enable_debug_mode
from .registry import RegistryConnectionError
from .types import NoteAssociation

# Configure quiet mode by default (suppress verbose library output)
# Set MEMOECHO_VERBOSE=1 to enable debug mode via environment
if os.environ.get("MEMOECHO_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"memo-echo {version('memo-echo')}")
        raise typer.Exit()


app = typer.Typer(
    name="memo-echo",
    help="Concept graph and note associations for a Markdown vault.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
):
    """Concept graph and note associations for a Markdown vault."""


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

VaultArgument = Annotated[
    Path,
    typer.Argument(help="Vault directory holding the notes"),
]

StoreOption = Annotated[
    Optional[Path],
    typer.Option(
        "--store", "-s",
        envvar="MEMOECHO_STORE_PATH",
        help="Path to the store directory (default: <vault>/.memo-echo/)",
    ),
]

NoteOption = Annotated[
    Optional[str],
    typer.Option("--note", "-n", help="Vault-relative note path, e.g. kafka.md"),
]


def _open(vault: Path, store: Optional[Path]) -> MemoEcho:
    """Open the vault, turning setup failures into a clean message."""
    vault = vault.expanduser()
    if not vault.is_dir():
        typer.echo(f"Error: vault not found: {vault}", err=True)
        raise typer.Exit(1)
    try:
        return MemoEcho(vault, store)
    except (ValueError, RuntimeError, OSError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def _format_association(assoc: NoteAssociation, focus: Optional[str] = None) -> str:
    if focus and assoc.target_note_id == focus:
        other = assoc.source_note_id
    elif focus:
        other = assoc.target_note_id
    else:
        other = f"{assoc.source_note_id} <-> {assoc.target_note_id}"
    shared = ", ".join(assoc.shared_concepts)
    return f"{assoc.confidence:.2f}  {other}  [{shared}]"


@app.command()
def index(
    vault: VaultArgument,
    note: NoteOption = None,
    changed: Annotated[bool, typer.Option(
        "--changed", help="Only notes modified since they were last indexed",
    )] = False,
    store: StoreOption = None,
):
    """
    Extract concepts and index notes.

    \b
    Ctrl+C stops after the current note.
    """
    with _open(vault, store) as me:
        try:
            if note:
                result = me.process_note(note)
                if result.skipped:
                    typer.echo(f"Skipped {note}: {result.reason}")
                else:
                    typer.echo(f"{note}: {', '.join(me.note_concepts(note)) or '(no concepts)'}")
                return

            stop = threading.Event()
            previous = signal.signal(signal.SIGINT, lambda *_: stop.set())
            try:
                report = me.index_all(stop=stop, only_changed=changed)
            finally:
                signal.signal(signal.SIGINT, previous)
        except RegistryConnectionError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(2)

        typer.echo(
            f"Indexed {report.processed}, skipped {report.skipped}, failed {report.failed}"
            + (" (stopped)" if report.stopped else "")
        )
        for note_id, message in report.failures.items():
            typer.echo(f"  {note_id}: {message}", err=True)


@app.command()
def associations(
    vault: VaultArgument,
    note: NoteOption = None,
    output_json: Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")] = False,
    store: StoreOption = None,
):
    """List associations between notes that share concepts."""
    with _open(vault, store) as me:
        if output_json:
            typer.echo(json.dumps(me.export(note)["associations"], ensure_ascii=False, indent=2))
            return
        found = me.associations(note)
        if not found:
            typer.echo("No associations found.")
            return
        for assoc in found:
            typer.echo(_format_association(assoc, note))


@app.command()
def stats(
    vault: VaultArgument,
    store: StoreOption = None,
):
    """Show index statistics."""
    with _open(vault, store) as me:
        s = me.stats()
    typer.echo(f"Notes:              {s.total_notes}")
    typer.echo(f"Concepts:           {s.total_concepts}")
    typer.echo(f"Possible pairs:     {s.total_associations}")
    typer.echo(f"Concepts per note:  {s.avg_concepts_per_note:.2f}")
    typer.echo(f"Notes per concept:  {s.avg_notes_per_concept:.2f}")


@app.command()
def ignore(
    vault: VaultArgument,
    note_a: Annotated[str, typer.Argument(help="First note")],
    note_b: Annotated[str, typer.Argument(help="Second note")],
    undo: Annotated[bool, typer.Option("--undo", help="Show the association again")] = False,
    store: StoreOption = None,
):
    """Hide the association between two notes."""
    with _open(vault, store) as me:
        if undo:
            me.unignore(note_a, note_b)
            typer.echo(f"Restored {note_a} <-> {note_b}")
        else:
            me.ignore(note_a, note_b)
            typer.echo(f"Ignored {note_a} <-> {note_b}")


@app.command()
def forget(
    vault: VaultArgument,
    note_a: Annotated[str, typer.Argument(help="First note")],
    note_b: Annotated[str, typer.Argument(help="Second note")],
    concept: Annotated[str, typer.Argument(help="Shared concept to drop from this pair")],
    undo: Annotated[bool, typer.Option("--undo", help="Restore the concept")] = False,
    store: StoreOption = None,
):
    """Drop one shared concept from the association between two notes."""
    with _open(vault, store) as me:
        if undo:
            me.restore_concept(note_a, note_b, concept)
            typer.echo(f"Restored {concept!r} for {note_a} <-> {note_b}")
        else:
            me.delete_concept(note_a, note_b, concept)
            typer.echo(f"Removed {concept!r} from {note_a} <-> {note_b}")


@app.command()
def export(
    vault: VaultArgument,
    note: NoteOption = None,
    output: Annotated[Optional[Path], typer.Option(
        "--output", "-o", help="Write to this file instead of stdout",
    )] = None,
    store: StoreOption = None,
):
    """Export associations and statistics as JSON."""
    with _open(vault, store) as me:
        payload = json.dumps(me.export(note), ensure_ascii=False, indent=2)
    if output:
        output.write_text(payload + "\n", encoding="utf-8")
        typer.echo(f"Exported to {output}")
    else:
        typer.echo(payload)


# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, "memo-echo CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
