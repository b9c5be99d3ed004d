from pinixpkgs.compose import EnvironmentDescriptor, compose, spawn
from pinixpkgs.drv import EnvContribution, Package, drv
from pinixpkgs.fetchurl import fetchurl
from pinixpkgs.graph import DerivationGraph, plan
from pinixpkgs.package_set import PackageSet, package
from pinixpkgs.repository import Repository, evaluate
from pinixpkgs.shell import Session, ShellRequest, host_system, run_request

__all__ = [
    "DerivationGraph", "EnvContribution", "EnvironmentDescriptor", "Package",
    "PackageSet", "Repository", "Session", "ShellRequest", "compose", "drv",
    "evaluate", "fetchurl", "host_system", "package", "plan", "run_request", "spawn",
]
