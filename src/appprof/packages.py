from __future__ import annotations

import logging
import re
import subprocess
from collections.abc import Callable
from dataclasses import dataclass

from .errors import PackageNotFoundError, UidResolutionError


logger = logging.getLogger(__name__)

PACKAGE_LIST_COMMAND = ["pm", "list", "packages", "-U"]
PACKAGE_LINE_PATTERN = re.compile(r"package:([\w\.]+)[ \t]+uid:(\d+)")
MAX_UID = 2**32 - 1

PackageLister = Callable[[], str]


@dataclass(frozen=True)
class ApplicationIdentity:
    package_name: str
    uid: int | None = None


def list_packages(timeout_s: float = 30.0) -> str:
    """Run the package manager listing and return its raw stdout."""

    try:
        result = subprocess.run(  # noqa: S603
            PACKAGE_LIST_COMMAND,
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout_s,
        )
    except (OSError, subprocess.SubprocessError, UnicodeDecodeError) as exc:
        raise UidResolutionError(
            f"failed to run `{' '.join(PACKAGE_LIST_COMMAND)}`: {exc}",
            hint="The package manager is only reachable on an Android device shell.",
        ) from exc
    return result.stdout


def find_uid(listing: str, package_name: str) -> int | None:
    """Return the uid of the first line naming exactly `package_name`."""

    for line in listing.splitlines():
        match = PACKAGE_LINE_PATTERN.match(line.strip())
        if match is None:
            continue
        name, raw_uid = match.group(1), match.group(2)
        uid = int(raw_uid)
        if uid > MAX_UID:
            logger.debug("skipping out-of-range uid %s for %s", raw_uid, name)
            continue
        if name == package_name:
            return uid
    return None


class UidResolver:
    """Resolve package names to owner uids; results are never cached."""

    def __init__(self, lister: PackageLister = list_packages) -> None:
        self.lister = lister

    def resolve_uid(self, package_name: str) -> int:
        uid = find_uid(self.lister(), package_name)
        if uid is None:
            raise PackageNotFoundError(f"failed to find package {package_name}", package=package_name)
        return uid

    def resolve(self, package_name: str) -> ApplicationIdentity:
        return ApplicationIdentity(package_name=package_name, uid=self.resolve_uid(package_name))
