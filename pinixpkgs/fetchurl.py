"""Fixed-output fetch recipes.

A ``builtin:fetchurl`` derivation is downloaded by the builder itself
instead of running a program: you cannot build a downloader before you
have one. Its output path depends only on the declared hash, so changing
the URL of a mirror does not change the path, and the builder refuses any
download whose hash differs.
"""

from pinix.hash import parse_hash
from pinix.store_path import STORE_DIR
from pinixpkgs.drv import EnvContribution, Package, drv

FETCHURL_ENV_BASE = {
    "impureEnvVars": "http_proxy https_proxy ftp_proxy all_proxy no_proxy",
    "preferLocalBuild": "1",
}


def fetchurl(name: str, url: str, output_hash: str, *, recursive: bool = False,
             executable: bool = False, contribution: EnvContribution | None = None,
             store_dir: str = STORE_DIR) -> Package:
    """``output_hash`` may be SRI, ``sha256:<digest>`` or a bare sha256 digest."""
    expected = parse_hash(output_hash, None if "-" in output_hash or ":" in output_hash else "sha256")
    mode = "recursive" if recursive else "flat"
    return drv(
        name=name,
        builder="builtin:fetchurl",
        system="builtin",
        output_hash=expected.sri,
        output_hash_algo=expected.algo,
        output_hash_mode=mode,
        contribution=contribution if contribution is not None else EnvContribution(),
        store_dir=store_dir,
        env={
            **FETCHURL_ENV_BASE,
            "executable": "1" if executable else "",
            "outputHash": expected.sri,
            "outputHashAlgo": "",
            "outputHashMode": mode,
            "url": url,
            "urls": url,
        },
    )
