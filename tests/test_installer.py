from __future__ import annotations

import io
import json
import tarfile
from pathlib import Path

import httpx
import pytest

from boltpy.installer import DEFAULT_FORGE, PuppetfileInstaller, parse_puppetfile
from boltpy.models import FileError, InstallError


def _release(top: str, files: dict[str, str]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for name, content in files.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(f"{top}/{name}")
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


class _Forge:
    """In-memory Forge API served through ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.requests: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append(path)
        if path == "/v3/modules/puppetlabs-stdlib":
            return httpx.Response(200, json={"current_release": {"version": "9.4.1"}})
        if path == "/v3/files/puppetlabs-stdlib-9.4.1.tar.gz":
            return httpx.Response(
                200,
                content=_release(
                    "puppetlabs-stdlib-9.4.1",
                    {"metadata.json": json.dumps({"version": "9.4.1"}), "tasks/echo.sh": "echo hi\n"},
                ),
            )
        if path == "/v3/files/acme-ntp-1.0.0.tar.gz":
            return httpx.Response(200, content=_release("acme-ntp-1.0.0", {"README.md": "ntp\n"}))
        return httpx.Response(404, json={"errors": ["not found"]})


def test_parse_puppetfile_forms() -> None:
    parsed = parse_puppetfile(
        """
# site modules
forge "https://forge.example.com/"
moduledir 'vendored'
mod 'puppetlabs-stdlib', '9.4.1'
mod 'puppetlabs/ntp', 'latest'
mod 'acme-apache'
mod 'site_tools', git: 'https://git.example.com/site_tools.git', ref: 'main'
mod 'legacy', :git => 'https://git.example.com/legacy.git'
"""
    )
    assert parsed.forge == "https://forge.example.com"
    assert parsed.moduledir == "vendored"
    by_name = {module.name: module for module in parsed.modules}
    assert (by_name["stdlib"].author, by_name["stdlib"].version) == ("puppetlabs", "9.4.1")
    assert by_name["ntp"].version is None
    assert by_name["apache"].author == "acme"
    assert by_name["site_tools"].is_git
    assert by_name["site_tools"].ref == "main"
    assert by_name["legacy"].git == "https://git.example.com/legacy.git"
    assert by_name["legacy"].ref is None


def test_parse_puppetfile_defaults_to_public_forge() -> None:
    parsed = parse_puppetfile("mod 'puppetlabs-stdlib'\n")
    assert parsed.forge == DEFAULT_FORGE
    assert parsed.moduledir is None


@pytest.mark.parametrize(
    ("text", "message"),
    [
        ("install 'stdlib'", "unrecognized statement"),
        ("mod 'stdlib'", "must be named 'author-module'"),
        ("mod 'acme-x', branch: 'main'", "unsupported module options branch"),
        ("mod 'acme-x'\nmod 'other-x'", "more than once: x"),
    ],
)
def test_parse_puppetfile_rejects_bad_input(text: str, message: str) -> None:
    with pytest.raises(InstallError, match=message):
        parse_puppetfile(text)


def test_install_downloads_forge_releases(tmp_path: Path) -> None:
    puppetfile = tmp_path / "Puppetfile"
    puppetfile.write_text(
        "forge 'https://forge.test'\nmod 'puppetlabs-stdlib'\nmod 'acme-ntp', '1.0.0'\n",
        encoding="utf-8",
    )
    forge = _Forge()
    (tmp_path / "modules" / "ntp").mkdir(parents=True)
    (tmp_path / "modules" / "ntp" / "stale.txt").write_text("old", encoding="utf-8")

    installer = PuppetfileInstaller(transport=httpx.MockTransport(forge))
    assert installer.install(puppetfile, tmp_path / "modules") is True

    assert forge.requests == [
        "/v3/modules/puppetlabs-stdlib",
        "/v3/files/puppetlabs-stdlib-9.4.1.tar.gz",
        "/v3/files/acme-ntp-1.0.0.tar.gz",
    ]
    assert (tmp_path / "modules" / "stdlib" / "tasks" / "echo.sh").read_text(encoding="utf-8") == "echo hi\n"
    assert (tmp_path / "modules" / "ntp" / "README.md").exists()
    assert not (tmp_path / "modules" / "ntp" / "stale.txt").exists()
    assert sorted(path.name for path in (tmp_path / "modules").iterdir()) == ["ntp", "stdlib"]


def test_install_reports_failed_modules(tmp_path: Path) -> None:
    puppetfile = tmp_path / "Puppetfile"
    puppetfile.write_text(
        "forge 'https://forge.test'\nmod 'acme-missing', '2.0.0'\nmod 'acme-ntp', '1.0.0'\n",
        encoding="utf-8",
    )
    installer = PuppetfileInstaller(transport=httpx.MockTransport(_Forge()))
    assert installer.install(puppetfile, tmp_path / "modules") is False
    assert sorted(path.name for path in (tmp_path / "modules").iterdir()) == ["ntp"]


def test_install_honors_moduledir_line(tmp_path: Path) -> None:
    puppetfile = tmp_path / "Puppetfile"
    puppetfile.write_text(
        "forge 'https://forge.test'\nmoduledir 'vendored'\nmod 'acme-ntp', '1.0.0'\n",
        encoding="utf-8",
    )
    installer = PuppetfileInstaller(transport=httpx.MockTransport(_Forge()))
    assert installer.install(puppetfile, tmp_path / "modules")
    assert (tmp_path / "vendored" / "ntp" / "README.md").exists()


def test_install_requires_puppetfile(tmp_path: Path) -> None:
    with pytest.raises(FileError, match="Could not find a Puppetfile"):
        PuppetfileInstaller().install(tmp_path / "Puppetfile", tmp_path / "modules")
