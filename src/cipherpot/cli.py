from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Sequence

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .core.config import EngineConfig
from .core.dealer import format_cards
from .core.errors import CipherpotError
from .core.models import Move, MoveKind, SessionInfo, Settlement, Variant
from .features.session import SessionRegistry

logger = logging.getLogger(__name__)


class SimulationPresenter:
    def __init__(self, *, no_color: bool = False):
        if no_color:
            self.console = Console(force_terminal=False, color_system=None)
        else:
            self.console = Console(force_terminal=True, color_system="auto")

    def show_session(self, info: SessionInfo, hands: dict[str, str]) -> None:
        header = (
            f"Session {info.session_id} - {info.variant.value}\n"
            f"Phase: {info.phase.value} | Round: {info.round_index} | Pot: {info.pot_total}"
        )
        self.console.print(Panel(header, title="Cipherpot", border_style="bold cyan", expand=False))
        stakes = dict(info.stakes)
        table = Table(show_header=True, header_style="bold blue", box=box.SIMPLE_HEAVY)
        table.add_column("Seat", justify="right", style="cyan", no_wrap=True)
        table.add_column("Participant", style="bold")
        table.add_column("Stake", justify="right")
        table.add_column("Hand (owner view)")
        table.add_column("Folded", justify="center")
        for seat, who in enumerate(info.roster, 1):
            table.add_row(
                str(seat),
                who,
                str(stakes.get(who, 0)),
                hands.get(who, "?"),
                "yes" if who in info.folded else "",
            )
        self.console.print(table)

    def show_moves(self, moves: Sequence[Move]) -> None:
        table = Table(title="Move log", show_header=True, header_style="bold magenta", box=box.SIMPLE)
        table.add_column("#", justify="right", style="cyan")
        table.add_column("Round", justify="right")
        table.add_column("Participant")
        table.add_column("Kind", style="bold")
        table.add_column("Public amount", justify="right")
        for move in moves:
            amount = str(move.plain_amount) if move.kind is MoveKind.RAISE else ""
            table.add_row(str(move.sequence_number), str(move.round_index), move.participant, move.kind.value, amount)
        self.console.print(table)

    def show_settlement(self, settlement: Settlement | None) -> None:
        if settlement is None:
            self.console.print("[yellow]Session did not settle.[/]")
            return
        table = Table.grid(padding=(0, 1))
        table.add_column(style="bold cyan", justify="right")
        table.add_column(justify="left")
        table.add_row("Reason", settlement.reason)
        for payout in settlement.payouts:
            table.add_row(payout.recipient, f"{payout.amount} ({payout.kind})")
        table.add_row("Total", str(settlement.total))
        self.console.print(Panel(table, title="Settlement", border_style="green", expand=False))

    def error(self, message: str) -> None:
        self.console.print(f"[bold red]error:[/] {message}")


def run_simulation(
    *,
    players: int = 3,
    min_stake: int = 10,
    raise_amount: int = 5,
    seed: int | None = None,
    no_color: bool = False,
    presenter: SimulationPresenter | None = None,
) -> Settlement | None:
    """Play one scripted session end to end: everyone raises once, then all but the last seat fold."""

    view = presenter or SimulationPresenter(no_color=no_color)
    config = EngineConfig(deck_seed=seed, max_capacity=max(players, EngineConfig.max_capacity))
    registry = SessionRegistry(config)
    sid = registry.create_session(Variant.TEXAS_HOLDEM, players, min_stake)
    roster = [f"P{seat}" for seat in range(1, players + 1)]
    for who in roster:
        registry.join(sid, who, min_stake)

    hands: dict[str, str] = {}
    for who in roster:
        state = registry.own_confidential_state(sid, who, who)
        hands[who] = format_cards([int(registry.cipher.decrypt(card, who)) for card in state.cards])
    view.show_session(registry.session_info(sid), hands)

    for who in roster:
        amount = registry.encrypt_amount(sid, who, raise_amount)
        registry.apply_move(sid, who, MoveKind.RAISE, amount, raise_amount)
    for who in roster[:-1]:
        registry.apply_move(sid, who, MoveKind.FOLD)

    info = registry.session_info(sid)
    view.show_session(info, hands)
    view.show_moves(registry.moves(sid))
    view.show_settlement(info.settlement)
    return info.settlement


def _add_serve_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--host", default=None, help="Bind address (default: $BIND or 0.0.0.0)")
    p.add_argument("--port", type=int, default=None, help="Port (default: $PORT or 8000)")


def _add_simulate_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--players", type=int, default=3, help="Seats in the simulated session")
    p.add_argument("--min-stake", type=int, default=10, help="Minimum stake to join")
    p.add_argument("--raise-amount", type=int, default=5, help="Public amount each seat raises in round one")
    # If omitted, hands are dealt from the system RNG.
    p.add_argument("--seed", type=int, default=None, help="Deck seed (random if omitted)")
    p.add_argument("--no-color", action="store_true", help="Disable colored output (default is colored)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cipherpot", description="Confidential multi-party wagering engine")
    sub = parser.add_subparsers(dest="command", required=True)
    _add_serve_args(sub.add_parser("serve", help="Run the HTTP API"))
    _add_simulate_args(sub.add_parser("simulate", help="Play one scripted session in-process"))
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(sys.argv[1:] if argv is None else argv))

    if args.command == "serve":
        from .web.app import main as serve

        serve(host=args.host, port=args.port)
        return 0

    presenter = SimulationPresenter(no_color=args.no_color)
    try:
        run_simulation(
            players=args.players,
            min_stake=args.min_stake,
            raise_amount=args.raise_amount,
            seed=args.seed,
            presenter=presenter,
        )
    except CipherpotError as exc:
        logger.debug("simulation aborted", extra={"code": exc.code})
        presenter.error(exc.message)
        return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
