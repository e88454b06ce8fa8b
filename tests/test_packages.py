from __future__ import annotations

import subprocess

import pytest

from appprof import packages
from appprof.errors import PackageNotFoundError, UidResolutionError
from appprof.packages import UidResolver, find_uid


LISTING = "package:com.foo uid:10001\npackage:com.bar uid:10002\n"


def _resolver(listing: str) -> UidResolver:
    return UidResolver(lambda: listing)


def test_resolves_exact_package_name() -> None:
    assert _resolver(LISTING).resolve_uid("com.bar") == 10002
    identity = _resolver(LISTING).resolve("com.foo")
    assert identity.package_name == "com.foo"
    assert identity.uid == 10001


def test_unknown_package_is_not_found() -> None:
    with pytest.raises(PackageNotFoundError) as excinfo:
        _resolver(LISTING).resolve_uid("com.baz")
    assert excinfo.value.to_dict()["package"] == "com.baz"


def test_malformed_line_does_not_block_later_lines() -> None:
    listing = "package:com.qux uid:notanumber\n" + LISTING
    assert _resolver(listing).resolve_uid("com.bar") == 10002
    with pytest.raises(PackageNotFoundError):
        _resolver(listing).resolve_uid("com.qux")


def test_out_of_range_uid_is_skipped_without_aborting() -> None:
    listing = "package:com.big uid:99999999999\npackage:com.big uid:10005\n"
    assert find_uid(listing, "com.big") == 10005


def test_match_is_full_and_case_sensitive() -> None:
    listing = "package:com.foo.bar uid:10007\n"
    assert find_uid(listing, "com.foo") is None
    assert find_uid(listing, "COM.FOO.BAR") is None
    assert find_uid(listing, "com.foo.bar") == 10007


def test_first_matching_line_wins() -> None:
    listing = "package:com.foo uid:10001\npackage:com.foo uid:10009\n"
    assert find_uid(listing, "com.foo") == 10001


def test_unreachable_package_manager_is_resolution_failure(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    def _missing(*args, **kwargs):  # type: ignore[no-untyped-def]
        raise FileNotFoundError("pm")

    monkeypatch.setattr(packages.subprocess, "run", _missing)
    with pytest.raises(UidResolutionError) as excinfo:
        UidResolver().resolve_uid("com.foo")
    assert not isinstance(excinfo.value, PackageNotFoundError)


def test_default_lister_parses_package_manager_output(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    calls: list[list[str]] = []

    def _fake_run(argv, **kwargs):  # type: ignore[no-untyped-def]
        calls.append(list(argv))
        return subprocess.CompletedProcess(args=argv, returncode=0, stdout=LISTING, stderr="")

    monkeypatch.setattr(packages.subprocess, "run", _fake_run)
    assert UidResolver().resolve_uid("com.foo") == 10001
    assert calls == [["pm", "list", "packages", "-U"]]
