#!/usr/bin/env python3
"""pinix command line.

Exit status: 0 on success, 3 when a source, attribute or architecture
cannot be resolved, 4 on a hash mismatch, 5 when a fetch fails, 6 when a
build fails, 1 for anything else.
"""

import argparse
import json
import logging
import os
import sys

from pinix import derivation, nar, store_path
from pinix.config import load_config
from pinix.errors import EXIT_FAILURE, PinixError
from pinix.fetch import Fetcher
from pinix.hash import hash_file
from pinix.log import configure_logging
from pinix.registry import Registry
from pinix.store import Store

logger = logging.getLogger("pinix.main")


def _print_hash(h, use_base32: bool) -> None:
    print(f"{h.algo}:{h.nix32}" if use_base32 else f"{h.algo}:{h.hex}")


def cmd_hash_path(args, config):
    h, _ = nar.nar_hash(args.path)
    if args.sri:
        print(h.sri)
    else:
        _print_hash(h, args.base32)


def cmd_hash_file(args, config):
    h = hash_file(args.path)
    if args.sri:
        print(h.sri)
    else:
        _print_hash(h, args.base32)


def cmd_store_path(args, config):
    h, _ = nar.nar_hash(args.path)
    name = args.name or os.path.basename(os.path.abspath(args.path))
    store_dir = os.path.join(config.store_root, "store")
    print(store_path.make_source_store_path(name, h.digest, store_dir=store_dir))


def cmd_drv_show(args, config):
    with open(args.drv_path) as f:
        drv = derivation.parse(f.read())
    info = {
        "outputs": {k: {"path": v.path, "hashAlgo": v.hash_algo, "hash": v.hash_value}
                    for k, v in drv.outputs.items()},
        "inputDrvs": drv.input_drvs,
        "inputSrcs": drv.input_srcs,
        "system": drv.platform,
        "builder": drv.builder,
        "args": drv.args,
        "env": drv.env,
    }
    json.dump({args.drv_path: info}, sys.stdout, indent=2)
    print()


def cmd_sources(args, config):
    registry = Registry.load(args.registry)
    for name in registry.names():
        pin = registry.resolve(name)
        print(f"{name}\t{pin.kind}\t{pin.revision}\t{pin.content_hash.sri}\t{pin.locator}")


def cmd_fetch(args, config):
    registry = Registry.load(args.registry)
    with Store(config.store_root) as store:
        fetcher = Fetcher.from_config(store, config)
        for name in args.names or registry.names():
            print(fetcher.fetch(registry.resolve(name)).path)


def cmd_shell(args, config):
    from pinixpkgs.compose import spawn
    from pinixpkgs.shell import ShellRequest, run_request

    req = ShellRequest(
        registry_path=args.registry,
        packages=tuple(args.packages),
        source=args.source,
        system=args.system,
    )
    with Store(config.store_root) as store:
        env = run_request(req, store, config)
        if args.add_root:
            store.add_root(args.add_root, env.search_paths)
        if args.print_env:
            json.dump(env.to_dict(), sys.stdout, indent=2)
            print()
            return 0
        argv = ["/bin/sh", "-c", args.run] if args.run else [os.environ.get("SHELL", "/bin/sh")]
        # the packages stay rooted until the shell exits
        with store.session_root(env.search_paths):
            return spawn(env, argv, pure=not args.impure)


def cmd_gc(args, config):
    with Store(config.store_root) as store:
        if args.remove_root:
            store.remove_root(args.remove_root)
        if args.list_roots:
            for name, paths in store.roots().items():
                for p in paths:
                    print(f"{name}\t{p}")
            return 0
        for path in store.collect_garbage():
            print(f"deleted {path}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pinix", description="Pinned sources, built and composed")
    parser.add_argument("--store", help="store root (default from config)")
    parser.add_argument("--config", help="config file")
    parser.add_argument("-j", "--max-jobs", type=int, help="parallel builds")
    parser.add_argument("-v", "--verbose", action="count", default=0)
    parser.add_argument("-q", "--quiet", action="store_true")
    parser.add_argument("--log-json", action="store_true", help="log as JSON lines")
    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("shell", help="Build packages and start a shell with them")
    p.add_argument("packages", nargs="+", help="attribute names, in precedence order")
    p.add_argument("-r", "--registry", default="nix/sources.json")
    p.add_argument("-s", "--source", default="nixpkgs", help="registry entry holding the recipes")
    p.add_argument("--system", help="architecture (default: this machine)")
    p.add_argument("--run", help="command to run instead of an interactive shell")
    p.add_argument("--impure", action="store_true", help="inherit the calling environment")
    p.add_argument("--print-env", action="store_true", help="print the environment as JSON")
    p.add_argument("--add-root", metavar="NAME", help="keep these packages from garbage collection")
    p.add_argument("--check", action="store_true", help="rebuild built outputs and compare")
    p.add_argument("--keep-failed", action="store_true", help="keep the build directory of a failed build")
    p.set_defaults(func=cmd_shell)

    p = sub.add_parser("fetch", help="Fetch and verify pinned sources")
    p.add_argument("names", nargs="*")
    p.add_argument("-r", "--registry", default="nix/sources.json")
    p.set_defaults(func=cmd_fetch)

    p = sub.add_parser("sources", help="List the pinned sources of a registry")
    p.add_argument("-r", "--registry", default="nix/sources.json")
    p.set_defaults(func=cmd_sources)

    p = sub.add_parser("hash-path", help="Hash a path in NAR format")
    p.add_argument("path")
    p.add_argument("--base32", action="store_true")
    p.add_argument("--sri", action="store_true")
    p.set_defaults(func=cmd_hash_path)

    p = sub.add_parser("hash-file", help="Hash a file (flat, not NAR)")
    p.add_argument("path")
    p.add_argument("--base32", action="store_true")
    p.add_argument("--sri", action="store_true")
    p.set_defaults(func=cmd_hash_file)

    p = sub.add_parser("store-path", help="Compute the store path of a local path")
    p.add_argument("path")
    p.add_argument("--name", help="Override the store name")
    p.set_defaults(func=cmd_store_path)

    p = sub.add_parser("drv-show", help="Show a .drv file as JSON")
    p.add_argument("drv_path")
    p.set_defaults(func=cmd_drv_show)

    p = sub.add_parser("gc", help="Delete store paths not reachable from a root")
    p.add_argument("--remove-root", metavar="NAME")
    p.add_argument("--list-roots", action="store_true")
    p.set_defaults(func=cmd_gc)
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return EXIT_FAILURE

    levels = {0: logging.WARNING, 1: logging.INFO}
    level = logging.ERROR if args.quiet else levels.get(args.verbose, logging.DEBUG)
    configure_logging(level, json_format=args.log_json)

    try:
        config = load_config(args.config).with_overrides(
            store_root=args.store,
            max_jobs=args.max_jobs,
            check=getattr(args, "check", False) or None,
            keep_failed=getattr(args, "keep_failed", False) or None,
        )
        return args.func(args, config) or 0
    except PinixError as e:
        logger.error("%s", e)
        return e.exit_code
    except (OSError, ValueError) as e:
        logger.error("%s", e)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
