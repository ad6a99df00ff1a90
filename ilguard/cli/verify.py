"""
ilguard/cli/verify.py

ilguard verify - Reserve Journal Verification
=============================================

Usage:
    ilguard verify <journal>                       Human output (default)
    ilguard verify <journal> --format json         Machine-readable JSON
    ilguard verify <journal> --format compact      One-line pipeline output
    ilguard verify <journal> --signer <hex>        Pin the signing key
    ilguard verify <journal> --quiet               Exit code only
    ilguard verify <journal> --no-color            Disable ANSI

Exit codes:
    0  Journal fully valid  (sequence + chain + signatures + balances)
    1  Journal has violations
    2  Error  (file missing, malformed line)
"""

import json
import sys
import time
from pathlib import Path
from typing import Optional

import click

from ilguard.core.exceptions import JournalError
from ilguard.reserve.journal import JournalSummary, verify_journal


# ── ANSI color ────────────────────────────────────────────────────────────────

class _Color:
    """Auto-disables when not a TTY or --no-color is passed."""
    _on: bool = True

    @classmethod
    def configure(cls, enabled: bool) -> None:
        cls._on = enabled and sys.stdout.isatty()

    @classmethod
    def green(cls, s: str) -> str:
        return f"\033[32m{s}\033[0m" if cls._on else s

    @classmethod
    def red(cls, s: str) -> str:
        return f"\033[31m{s}\033[0m" if cls._on else s

    @classmethod
    def yellow(cls, s: str) -> str:
        return f"\033[33m{s}\033[0m" if cls._on else s

    @classmethod
    def bold(cls, s: str) -> str:
        return f"\033[1m{s}\033[0m" if cls._on else s

    @classmethod
    def dim(cls, s: str) -> str:
        return f"\033[2m{s}\033[0m" if cls._on else s


def _row_ok(label: str, value: str) -> str:
    return f"  {_Color.dim(f'{label:<16}')}  {_Color.green('OK  ')}  {value}"

def _row_fail(label: str, value: str) -> str:
    return f"  {_Color.dim(f'{label:<16}')}  {_Color.red('FAIL')}  {value}"

def _row_info(label: str, value: str) -> str:
    return f"  {_Color.dim(f'{label:<16}')}        {value}"


# ── CLI command ───────────────────────────────────────────────────────────────

@click.command(name="verify")
@click.argument("journal", type=click.Path(exists=False))
@click.option(
    "--format", "fmt",
    type=click.Choice(["human", "json", "compact"], case_sensitive=False),
    default="human",
    show_default=True,
    help="Output format: human (default), json (CI/automation), compact (pipelines).",
)
@click.option(
    "--signer",
    type=str,
    default=None,
    metavar="PUBKEY_HEX",
    help="Require every entry to be signed by this Ed25519 public key.",
)
@click.option(
    "--quiet",
    is_flag=True,
    default=False,
    help="Suppress all output. Use exit code only (0=valid, 1=invalid, 2=error).",
)
@click.option(
    "--no-color",
    is_flag=True,
    default=False,
    help="Disable ANSI color output.",
)
def verify_command(
    journal:   str,
    fmt:       str,
    signer:    Optional[str],
    quiet:     bool,
    no_color:  bool,
) -> None:
    """
    Verify a reserve journal: sequence, hash chain, signatures, balances.

    JOURNAL is the path to a .jsonl reserve journal.
    """
    _Color.configure(not no_color)
    journal_path = Path(journal)

    if not journal_path.exists():
        _emit_error(f"Journal not found: {journal}", fmt, quiet)
        sys.exit(2)

    t_start = time.perf_counter()
    try:
        summary = verify_journal(journal_path, trusted_public_key=signer)
    except JournalError as e:
        _emit_error(str(e), fmt, quiet)
        sys.exit(2)
    elapsed = time.perf_counter() - t_start

    if quiet:
        sys.exit(0 if summary.is_valid else 1)

    if fmt == "json":
        out = {"ilguard_verify": {"journal": str(journal_path),
                                  "elapsed_seconds": round(elapsed, 3),
                                  **summary.to_dict()}}
        click.echo(json.dumps(out, indent=2))
    elif fmt == "compact":
        _output_compact(summary, journal_path, elapsed)
    else:
        _output_human(summary, journal_path, elapsed)

    sys.exit(0 if summary.is_valid else 1)


# ── Human output ──────────────────────────────────────────────────────────────

def _output_human(summary: JournalSummary, journal_path: Path, elapsed: float) -> None:
    bar = "─" * 68

    click.echo()
    click.echo(_Color.bold("  ILGuard  ·  Reserve Journal Verification"))
    click.echo(f"  {bar}")
    click.echo(_row_info("Journal", str(journal_path)))
    click.echo(_row_info("Entries", f"{summary.total_entries:,}"))
    click.echo()

    kinds = {v.violation_type for v in summary.violations}

    if summary.chain_valid:
        click.echo(_row_ok("Chain", "intact, all causal hashes valid"))
    else:
        click.echo(_row_fail("Chain", _Color.red("broken")))

    if summary.invalid_signatures == 0:
        click.echo(_row_ok("Signatures",
            f"{summary.valid_signatures:,} / {summary.total_entries:,} valid"))
    else:
        click.echo(_row_fail("Signatures",
            f"{summary.valid_signatures:,} valid  "
            + _Color.red(f"{summary.invalid_signatures:,} INVALID")))

    if "negative_balance" not in kinds:
        click.echo(_row_ok("Balances", "never negative"))
    else:
        click.echo(_row_fail("Balances", _Color.red("reserve went negative")))

    click.echo()
    for pool in sorted(summary.balances):
        click.echo(_row_info(
            pool,
            f"balance {summary.balances[pool]:,}  "
            f"collected {summary.total_collected.get(pool, 0):,}  "
            f"paid {summary.total_paid.get(pool, 0):,}",
        ))
    click.echo(_row_info("Verified", f"{elapsed:.3f}s"))
    click.echo()

    if summary.violations:
        click.echo(f"  {bar}")
        for v in summary.violations:
            click.echo(
                f"  {_Color.red(str(v.at_sequence)):>6}  "
                f"{_Color.yellow(f'{v.violation_type:<18}')}  {v.detail}"
            )
        click.echo(f"  {bar}")

    if summary.is_valid:
        click.echo(_Color.green(_Color.bold("  VALID  ·  0 violations")))
    else:
        click.echo(_Color.red(_Color.bold(
            f"  INVALID  ·  {len(summary.violations)} violation(s)"
        )))
    click.echo()


# ── Compact output ────────────────────────────────────────────────────────────

def _output_compact(summary: JournalSummary, journal_path: Path, elapsed: float) -> None:
    status = "VALID" if summary.is_valid else "INVALID"
    line = (
        f"{status:<8} {journal_path.name}  {summary.total_entries:,} entries  "
        f"{len(summary.violations)} violations  {elapsed:.3f}s"
    )
    click.echo(_Color.green(line) if summary.is_valid else _Color.red(line))


# ── Error output ──────────────────────────────────────────────────────────────

def _emit_error(message: str, fmt: str, quiet: bool) -> None:
    if quiet:
        return
    if fmt == "json":
        click.echo(json.dumps({"ilguard_verify": {"error": message}}, indent=2))
    else:
        click.echo(_Color.red(f"  Error: {message}"), err=True)
