"""
ilguard quote - payout breakdown for a position, without touching a reserve.

    ilguard quote --entry 1000:0 --exit 700:0 --price 1000000000000000000 \\
                  --deductible-bps 1000 --cap-bps 5000
"""

import json
import sys

import click

from ilguard.core.exceptions import ValidationError
from ilguard.core.models import PRICE_SCALE, PositionSnapshot
from ilguard.payout.calculator import compute_payout


def _parse_position(text: str, fees: int = 0) -> PositionSnapshot:
    try:
        amount0, amount1 = (int(part) for part in text.split(":"))
    except ValueError:
        raise click.BadParameter(f"expected AMOUNT0:AMOUNT1, got {text!r}") from None
    return PositionSnapshot(amount0, amount1, fees)


@click.command(name="quote")
@click.option("--entry", "entry", required=True, metavar="X0:Y0",
              help="Token amounts deposited at entry.")
@click.option("--exit", "exit_", required=True, metavar="X1:Y1",
              help="Token amounts withdrawn at exit.")
@click.option("--fees", type=int, default=0, show_default=True,
              help="Fees earned by the position, in token1 units.")
@click.option("--price", type=int, default=PRICE_SCALE, show_default=True,
              help="token0 price in token1, scaled by 10**18.")
@click.option("--deductible-bps", type=click.IntRange(0, 10_000), default=0, show_default=True)
@click.option("--cap-bps", type=click.IntRange(0, 10_000), default=10_000, show_default=True)
@click.option("--json", "as_json", is_flag=True, default=False,
              help="Emit the breakdown as JSON.")
def quote_command(
    entry:           str,
    exit_:           str,
    fees:            int,
    price:           int,
    deductible_bps:  int,
    cap_bps:         int,
    as_json:         bool,
) -> None:
    """Compute the impermanent-loss payout for one position."""
    try:
        breakdown = compute_payout(
            _parse_position(entry),
            _parse_position(exit_, fees),
            price,
            deductible_bps,
            cap_bps,
        )
    except ValidationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)

    if as_json:
        click.echo(json.dumps(breakdown.to_dict(), indent=2))
        return

    for label, value in (
        ("HODL value",        breakdown.hodl_value),
        ("LP value",          breakdown.lp_value),
        ("Impermanent loss",  breakdown.impermanent_loss),
        ("Deductible",        breakdown.deductible_amount),
        ("Before cap",        breakdown.payout_before_cap),
        ("Cap",               breakdown.cap_amount),
        ("Payout",            breakdown.payout),
    ):
        click.echo(f"  {label:<18} {value}")
