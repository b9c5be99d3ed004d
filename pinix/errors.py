"""Error taxonomy.

Every error carries the context needed to say which source, attribute or
derivation failed, so callers can report it without re-deriving anything.
``exit_code`` groups errors by failure class for the command line.
"""

EXIT_FAILURE = 1
EXIT_RESOLUTION = 3
EXIT_INTEGRITY = 4
EXIT_FETCH = 5
EXIT_BUILD = 6


class PinixError(Exception):
    exit_code = EXIT_FAILURE


# --- registry / input errors ---

class ResolutionError(PinixError):
    exit_code = EXIT_RESOLUTION


class UnknownSource(ResolutionError):
    def __init__(self, name: str, known: list[str] | None = None):
        self.name = name
        self.known = sorted(known or [])
        hint = f" (known: {', '.join(self.known)})" if self.known else ""
        super().__init__(f"unknown source {name!r}{hint}")


class MalformedRegistry(ResolutionError):
    def __init__(self, key: str, reason: str, path: str | None = None):
        self.key = key
        self.reason = reason
        self.path = path
        where = f" in {path}" if path else ""
        super().__init__(f"malformed registry entry {key!r}{where}: {reason}")


class HashFormatInvalid(ResolutionError):
    def __init__(self, key: str, value: str, reason: str = ""):
        self.key = key
        self.value = value
        detail = f": {reason}" if reason else ""
        super().__init__(f"cannot parse hash {value!r} for {key!r}{detail}")


# --- evaluation errors ---

class UnsupportedArchitecture(ResolutionError):
    def __init__(self, system: str, supported: list[str], source: str = ""):
        self.system = system
        self.supported = list(supported)
        self.source = source
        where = f" by {source}" if source else ""
        super().__init__(
            f"system {system!r} is not supported{where} "
            f"(supported: {', '.join(self.supported) or 'none'})"
        )


class AttributeNotFound(ResolutionError):
    def __init__(self, attr: str, source: str = ""):
        self.attr = attr
        self.source = source
        where = f" in {source}" if source else ""
        super().__init__(f"attribute {attr!r} not found{where}")


class CyclicDependency(ResolutionError):
    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__("dependency cycle: " + " -> ".join(self.cycle))


class MalformedRepository(ResolutionError):
    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"malformed recipe {key!r}: {reason}")


# --- fetch errors ---

class TransientFetchError(PinixError):
    """A retryable I/O failure (connection reset, timeout)."""

    exit_code = EXIT_FETCH

    def __init__(self, locator: str, reason: str):
        self.locator = locator
        self.reason = reason
        super().__init__(f"transient error fetching {locator}: {reason}")


class FetchFailure(PinixError):
    exit_code = EXIT_FETCH

    def __init__(self, name: str, locator: str, revision: str, attempts: int, reason: str):
        self.name = name
        self.locator = locator
        self.revision = revision
        self.attempts = attempts
        self.reason = reason
        super().__init__(
            f"fetching {name} ({locator} @ {revision}) failed "
            f"after {attempts} attempt(s): {reason}"
        )


class IntegrityViolation(PinixError):
    exit_code = EXIT_INTEGRITY

    def __init__(self, name: str, expected: str, actual: str, revision: str = ""):
        self.name = name
        self.expected = expected
        self.actual = actual
        self.revision = revision
        at = f" @ {revision}" if revision else ""
        super().__init__(
            f"hash mismatch for {name}{at}:\n"
            f"  specified: {expected}\n"
            f"  got:       {actual}"
        )


# --- build errors ---

class BuildError(PinixError):
    exit_code = EXIT_BUILD


class BuildFailure(BuildError):
    def __init__(self, drv_path: str, exit_status: int | None, log_excerpt: str = "", reason: str = ""):
        self.drv_path = drv_path
        self.exit_status = exit_status
        self.log_excerpt = log_excerpt
        self.reason = reason or (
            f"builder exited with status {exit_status}"
            if exit_status is not None else "builder did not run"
        )
        msg = f"builder for {drv_path} failed: {self.reason}"
        if log_excerpt:
            msg += "\nlast log lines:\n" + log_excerpt
        super().__init__(msg)


class NonDeterministicBuild(BuildError):
    def __init__(self, drv_path: str, output_path: str, expected: str, actual: str):
        self.drv_path = drv_path
        self.output_path = output_path
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"derivation {drv_path} may not be deterministic: "
            f"output {output_path} differs ({expected} != {actual})"
        )


class BuildCancelled(BuildError):
    def __init__(self, drv_path: str):
        self.drv_path = drv_path
        super().__init__(f"build of {drv_path} was cancelled")


# --- composition errors ---

class MissingBuiltOutput(PinixError):
    """A package was used before its output was built."""

    def __init__(self, attr: str, drv_path: str):
        self.attr = attr
        self.drv_path = drv_path
        super().__init__(f"{attr} ({drv_path}) has no built output in the store")
