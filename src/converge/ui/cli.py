from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from signal import SIGINT, signal
from typing import TYPE_CHECKING

from dotenv import load_dotenv

from converge.adapters.documents import dump_plan, dump_snapshot, load_plan
from converge.app import open_workspace
from converge.config import ConfigurationError, configure_logging
from converge.domain.errors import ConfigError, PartialApplyError
from converge.domain.model import ResourceAddress, is_unknown
from converge.domain.reconciliation import Action, CancellationToken

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from types import FrameType

    from converge.domain.reconciliation import ApplyResult, Plan, RefreshResult

log = logging.getLogger(__name__)

DEFAULT_DECLARATIONS = Path("converge.json")

_ACTION_SYMBOLS = {
    Action.CREATE: "+",
    Action.UPDATE: "~",
    Action.DELETE: "-",
    Action.REPLACE: "-/+",
    Action.NOOP: " ",
}


def _parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reconcile declared resources with the real world")
    parser.add_argument(
        "-f",
        "--declarations",
        type=Path,
        default=DEFAULT_DECLARATIONS,
        help="Declaration document (defaults to ./converge.json)",
    )
    parser.add_argument(
        "--workspace",
        type=str,
        help="State key to operate on (defaults to CONVERGE_WORKSPACE or 'default')",
    )
    parser.add_argument(
        "--database-uri",
        type=str,
        help="SQLAlchemy URI of the state database (defaults to DATABASE_URI)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    plan = subparsers.add_parser("plan", help="Show the changes an apply would make")
    plan.add_argument("--out", type=Path, help="Write the plan to this file")
    plan.add_argument("--destroy", action="store_true", help="Plan destroying everything")
    plan.add_argument(
        "--no-refresh",
        action="store_true",
        help="Skip reading the real world before planning",
    )
    plan.add_argument(
        "--no-lock",
        action="store_true",
        help="Plan without taking the state lock",
    )

    apply = subparsers.add_parser("apply", help="Apply the configuration or a saved plan")
    apply.add_argument("plan", nargs="?", type=Path, help="Saved plan file to apply")
    apply.add_argument("--destroy", action="store_true", help="Destroy everything")
    apply.add_argument(
        "--no-refresh",
        action="store_true",
        help="Skip reading the real world before planning",
    )

    subparsers.add_parser("refresh", help="Report drift between state and the real world")
    subparsers.add_parser("show", help="Print the current state")

    for name, help_text in (
        ("taint", "Force replacement of an instance on the next apply"),
        ("untaint", "Clear the taint flag of an instance"),
        ("forget", "Stop tracking an instance without deleting it"),
    ):
        command = subparsers.add_parser(name, help=help_text)
        command.add_argument("address", type=str, help="Resource address, e.g. type.name[0]")

    import_parser = subparsers.add_parser("import", help="Start tracking an existing object")
    import_parser.add_argument("address", type=str, help="Address to record the object under")
    import_parser.add_argument(
        "identity",
        nargs="+",
        help="Identifying attributes as name=value (values may be JSON)",
    )

    force_unlock = subparsers.add_parser("force-unlock", help="Break the state lock")
    force_unlock.add_argument("lock_id", nargs="?", help="Only break the lock with this id")

    return parser.parse_args(list(argv))


def _parse_address(value: str) -> ResourceAddress:
    try:
        return ResourceAddress.parse(value)
    except ValueError as exc:
        raise ValueError(f"Invalid resource address: {value}") from exc


def _parse_identity(pairs: Sequence[str]) -> dict[str, object]:
    identity: dict[str, object] = {}
    for pair in pairs:
        name, separator, raw = pair.partition("=")
        if not separator or not name:
            raise ValueError(f"Expected name=value, got {pair!r}")
        try:
            identity[name] = json.loads(raw)
        except json.JSONDecodeError:
            identity[name] = raw
    return identity


def _format_value(value: object) -> str:
    if is_unknown(value):
        return "(known after apply)"
    return json.dumps(value, default=str, sort_keys=True)


def render_plan(plan: Plan) -> str:
    lines: list[str] = []
    for change in plan.changes:
        symbol = _ACTION_SYMBOLS[change.action]
        reasons = f" ({', '.join(sorted(change.reasons))})" if change.reasons else ""
        lines.append(f"{symbol} {change}{reasons}")
        for attribute in change.attribute_changes:
            marker = " # forces replacement" if attribute.forces_replacement else ""
            lines.append(
                f"    {attribute.name}: {_format_value(attribute.before)} -> "
                f"{_format_value(attribute.after)}{marker}"
            )
    if plan.state_updates:
        lines.append(f"{len(plan.state_updates)} state-only update(s)")
    summary = plan.summary()
    lines.append(
        f"Plan: {summary[Action.CREATE]} to create, {summary[Action.UPDATE]} to update, "
        f"{summary[Action.REPLACE]} to replace, {summary[Action.DELETE]} to delete, "
        f"{summary[Action.NOOP]} unchanged"
    )
    return "\n".join(lines)


def _report_apply(result: ApplyResult) -> None:
    log.info(
        "Apply finished: applied=%s, errored=%s, skipped=%s, cancelled=%s, serial=%s",
        len(result.applied),
        len(result.errored),
        len(result.skipped),
        len(result.cancelled),
        result.snapshot.serial,
    )
    for failure in result.failures:
        log.error("%s", failure)


def _report_refresh(result: RefreshResult) -> None:
    for address in result.drifted:
        log.warning("%s has drifted", address)
    for address in result.disappeared:
        log.warning("%s no longer exists", address)
    log.info(
        "Refresh finished: read=%s, drifted=%s, disappeared=%s",
        len(result.read),
        len(result.drifted),
        len(result.disappeared),
    )


def _cancel_on_sigint(token: CancellationToken) -> Callable[[int, FrameType | None], None]:
    def handler(_signal_received: int, _frame: FrameType | None) -> None:
        if token.cancelled:
            log.info("Closed by user (Ctrl+C)")
            sys.exit(130)
        log.warning("Interrupted: waiting for running changes, press Ctrl+C again to abort")
        token.cancel("interrupted")

    return handler


def _run(args: argparse.Namespace) -> None:  # noqa: C901, PLR0912
    needs_declarations = args.command in {"plan", "apply", "refresh", "import"}
    declarations = args.declarations if needs_declarations else None
    workspace = open_workspace(
        declarations,
        workspace=args.workspace,
        database_uri=args.database_uri,
    )
    engine = workspace.engine

    if args.command == "plan":
        plan = engine.plan(
            workspace.configuration,
            refresh=not args.no_refresh,
            destroy=args.destroy,
            lock=not args.no_lock,
        )
        print(render_plan(plan))  # noqa: T201
        if args.out is not None:
            args.out.write_text(dump_plan(plan), encoding="utf-8")
            log.info("Saved plan to %s", args.out)
    elif args.command == "apply":
        token = CancellationToken()
        signal(SIGINT, _cancel_on_sigint(token))
        if args.plan is not None:
            saved = load_plan(args.plan.read_text(encoding="utf-8"))
            result = engine.apply_plan(saved, cancel=token)
        else:
            result = engine.apply(
                workspace.configuration,
                refresh=not args.no_refresh,
                destroy=args.destroy,
                cancel=token,
            )
        _report_apply(result)
    elif args.command == "refresh":
        _report_refresh(engine.refresh())
    elif args.command == "show":
        snapshot = engine.show()
        if snapshot is None:
            log.info("No state stored for workspace %s", engine.workspace)
        else:
            print(dump_snapshot(snapshot, indent=2))  # noqa: T201
    elif args.command == "taint":
        engine.taint(_parse_address(args.address))
    elif args.command == "untaint":
        engine.untaint(_parse_address(args.address))
    elif args.command == "forget":
        engine.forget(_parse_address(args.address))
    elif args.command == "import":
        instance = engine.import_instance(
            _parse_address(args.address), _parse_identity(args.identity)
        )
        log.info("Imported %s", instance.address)
    elif args.command == "force-unlock":
        broken = engine.force_unlock(args.lock_id)
        if broken is None:
            log.info("Workspace %s was not locked", engine.workspace)
    else:
        raise ValueError(f"Unsupported command: {args.command}")


def main(argv: Sequence[str] | None = None) -> None:
    """Main application entry point."""
    load_dotenv()
    args_list = list(argv) if argv is not None else list(sys.argv[1:])
    try:
        parsed_args = _parse_args(args_list)
    except ValueError:
        configure_logging()
        log.exception("CLI validation error")
        sys.exit(2)

    try:
        configure_logging(level=logging.DEBUG if parsed_args.verbose else None)
        _run(parsed_args)
    except (ConfigError, ConfigurationError, ValueError) as exc:
        log.error("%s", exc)  # noqa: TRY400
        sys.exit(2)
    except PartialApplyError as exc:
        _report_apply(exc.result)
        log.error("%s", exc)  # noqa: TRY400
        sys.exit(3)
    except Exception:
        log.exception("Fatal error")
        sys.exit(1)


if __name__ == "__main__":
    main()
