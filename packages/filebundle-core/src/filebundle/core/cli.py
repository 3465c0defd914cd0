import argparse
import json
import sys

from filebundle.core.diagnostics import inspect_directory
from filebundle.core.exception import AlreadyLockedError
from filebundle.core.migrate import DirKind, migrate, unmigrate
from filebundle.core.session import Session

KINDS = [k.value for k in DirKind]


def _heads_of(wd) -> dict:
    client = wd.client
    if client is None:
        return {}
    return {ref: bid.token for ref, bid in sorted(client.working_heads.get_heads().items())}


def _emit(out: dict, as_json: bool, text: str) -> None:
    if as_json:
        print(json.dumps(out, ensure_ascii=False))
    else:
        print(text)


def main(argv=None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    parser = argparse.ArgumentParser(prog="filebundle", description="filebundle-core CLI")
    sp = parser.add_subparsers(dest="cmd", required=True)

    syncp = sp.add_parser("sync", help="Sync a working copy with a bundled directory")
    ssp = syncp.add_subparsers(dest="sync_cmd", required=True)
    for name, help_text in (
        ("down", "Bring the working copy up to date with published bundles"),
        ("up", "Publish working copy changes as new bundles"),
    ):
        p = ssp.add_parser(name, help=help_text)
        p.add_argument("target", help="Bundled target directory")
        p.add_argument("--kind", choices=KINDS, default="dashboard")
        p.add_argument("--working-parent", default=None, help="Override where working copies live (defaults to <state_root>/working)")
        p.add_argument("--json", action="store_true", help="Output machine-readable JSON")
    ssp.choices["up"].add_argument("--owner", default=None, help="Name recorded in the directory lock")

    migp = sp.add_parser("migrate", help="Convert a directory to or from bundles")
    msp = migp.add_subparsers(dest="migrate_cmd", required=True)
    for name in ("bundle", "unbundle"):
        p = msp.add_parser(name, help=f"{name.capitalize()} a directory in place")
        p.add_argument("directory")
        p.add_argument("--kind", choices=KINDS, required=True)
        p.add_argument("--json", action="store_true", help="Output machine-readable JSON")
    msp.choices["bundle"].add_argument("--mode", default="local", help="Bundle mode to migrate to")

    lockp = sp.add_parser("locks", help="Device locks of a target directory")
    lsp = lockp.add_subparsers(dest="locks_cmd", required=True)
    lsl = lsp.add_parser("list", help="List other devices that have the directory open")
    lsl.add_argument("target")
    lsl.add_argument("--json", action="store_true", help="Output machine-readable JSON")
    lsi = lsp.add_parser("ignore", help="Delete another device's lock file")
    lsi.add_argument("target")
    lsi.add_argument("--device", required=True, help="Device ID whose lock to delete")
    lsi.add_argument("--json", action="store_true", help="Output machine-readable JSON")

    docp = sp.add_parser("doctor", help="Health checks for a bundled directory")
    docp.add_argument("target")
    docp.add_argument("--json", action="store_true", help="Output machine-readable JSON")

    args = parser.parse_args(argv)
    session = Session.create()

    if args.cmd == "sync":
        with session:
            wd = session.open_working_directory(args.target, args.kind, working_parent=args.working_parent)
            wd.prepare()
            out = {"target": args.target, "working_dir": str(wd.working_dir), "ok": True}
            if args.sync_cmd == "down":
                out["heads"] = _heads_of(wd)
                _emit(out, args.json, f"OK: {args.target} -> {wd.working_dir}")
                return 0

            try:
                wd.acquire_write_lock(owner=args.owner)
            except AlreadyLockedError as e:
                out.update(ok=False, locked_by=e.owner)
                _emit(out, args.json, f"LOCKED: {args.target} is locked by {e.owner}")
                return 2
            ok = wd.flush_data()
            out.update(ok=ok, heads=_heads_of(wd))
            _emit(out, args.json, f"{'OK' if ok else 'FAIL'}: published {wd.working_dir} to {args.target}")
            return 0 if ok else 2

    if args.cmd == "migrate":
        if args.migrate_cmd == "bundle":
            changed = migrate(args.directory, args.kind, args.mode, session.settings)
        else:
            changed = unmigrate(args.directory, args.kind, session.settings)
        out = {"directory": args.directory, "direction": args.migrate_cmd, "changed": changed}
        status = "CHANGED" if changed else "UNCHANGED"
        _emit(out, args.json, f"{status}: {args.migrate_cmd} {args.directory}")
        return 0

    if args.cmd == "locks":
        report = inspect_directory(args.target, settings=session.settings)
        locks = report["device_locks"]
        if args.locks_cmd == "list":
            if args.json:
                print(json.dumps({"target": args.target, "device_locks": locks}, ensure_ascii=False))
            else:
                for lk in locks:
                    print(f"{lk['device_id']} owner={lk['owner']} user={lk['username']} host={lk['host']} opened={lk['opened']}")
            return 0

        mgr = session.open_working_directory(args.target).device_locks
        match = [lk for lk in (mgr.get_conflicting_locks() if mgr else []) if lk.device_id == args.device]
        for lk in match:
            mgr.ignore(lk)
        out = {"target": args.target, "device": args.device, "deleted": bool(match)}
        _emit(out, args.json, f"{'DELETED' if match else 'NOT FOUND'}: device lock {args.device}")
        return 0 if match else 2

    if args.cmd == "doctor":
        report = inspect_directory(args.target, settings=session.settings)
        if args.json:
            print(json.dumps(report, ensure_ascii=False))
        else:
            if report.get("ok"):
                print(f"OK: {report.get('target')} mode={report.get('bundle_mode')}")
            else:
                print(f"FAIL: {report.get('target')}")
            for p in report.get("problems", []):
                print(f"- {p.get('code')}: {p.get('msg')}")
            for lk in report.get("device_locks", []):
                print(f"! open on device {lk.get('device_id')} by {lk.get('owner')}")
        return 0 if report.get("ok") else 2

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
