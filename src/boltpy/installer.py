"""Puppetfile parsing and module installation for ``bolt puppetfile install``.

Supported Puppetfile lines::

    forge 'https://forgeapi.puppet.com'
    moduledir 'modules'
    mod 'puppetlabs-stdlib', '9.4.1'
    mod 'puppetlabs-ntp'
    mod 'site_tools', git: 'https://example.com/site_tools.git', ref: 'main'
"""

from __future__ import annotations

import io
import logging
import re
import shutil
import subprocess
import tarfile
import tempfile
from dataclasses import dataclass
from pathlib import Path

import httpx

from boltpy.models import FileError, InstallError

_log = logging.getLogger("bolt.installer")

DEFAULT_FORGE = "https://forgeapi.puppet.com"
DEFAULT_TIMEOUT_SEC = 60.0

_STRING = r"""(?:'([^']*)'|"([^"]*)")"""
_FORGE_RE = re.compile(rf"^forge\s+{_STRING}\s*$")
_MODULEDIR_RE = re.compile(rf"^moduledir\s+{_STRING}\s*$")
_MOD_RE = re.compile(rf"^mod\s+{_STRING}\s*(?:,\s*(.*))?$")
_OPTION_RE = re.compile(rf"^:?([a-z_]+)(?::|\s*=>)\s*{_STRING}$")
_FORGE_NAME_RE = re.compile(r"^([A-Za-z0-9]+)[-/]([a-z][a-z0-9_]*)$")
_GIT_NAME_RE = re.compile(r"^[a-z][a-z0-9_]*$")


def _string(match: re.Match[str], start: int) -> str:
    single, double = match.group(start), match.group(start + 1)
    return single if single is not None else double


@dataclass(frozen=True)
class ModuleSpec:
    name: str
    author: str | None = None
    version: str | None = None
    git: str | None = None
    ref: str | None = None

    @property
    def is_git(self) -> bool:
        return self.git is not None


@dataclass(frozen=True)
class Puppetfile:
    modules: tuple[ModuleSpec, ...]
    forge: str = DEFAULT_FORGE
    moduledir: str | None = None


def _parse_mod(name: str, rest: str | None, lineno: int) -> ModuleSpec:
    options: dict[str, str] = {}
    version: str | None = None
    for raw in [item.strip() for item in (rest or "").split(",") if item.strip()]:
        option = _OPTION_RE.match(raw)
        if option:
            options[option.group(1)] = _string(option, 2)
            continue
        literal = re.fullmatch(_STRING, raw)
        if literal and version is None:
            version = _string(literal, 1)
            continue
        raise InstallError(f"Puppetfile line {lineno}: cannot parse module option '{raw}'")

    if "git" in options:
        if not _GIT_NAME_RE.match(name):
            raise InstallError(f"Puppetfile line {lineno}: invalid module name '{name}'")
        return ModuleSpec(name=name, git=options["git"], ref=options.get("ref"))
    if options:
        unknown = ", ".join(sorted(options))
        raise InstallError(f"Puppetfile line {lineno}: unsupported module options {unknown}")

    forge_name = _FORGE_NAME_RE.match(name)
    if not forge_name:
        raise InstallError(
            f"Puppetfile line {lineno}: Forge module '{name}' must be named 'author-module'"
        )
    if version == "latest":
        version = None
    return ModuleSpec(name=forge_name.group(2), author=forge_name.group(1), version=version)


def parse_puppetfile(text: str) -> Puppetfile:
    forge = DEFAULT_FORGE
    moduledir: str | None = None
    modules: list[ModuleSpec] = []
    for lineno, raw_line in enumerate(text.splitlines(), 1):
        line = raw_line.split("#", 1)[0].strip()
        if not line:
            continue
        match = _FORGE_RE.match(line)
        if match:
            forge = _string(match, 1).rstrip("/")
            continue
        match = _MODULEDIR_RE.match(line)
        if match:
            moduledir = _string(match, 1)
            continue
        match = _MOD_RE.match(line)
        if match:
            modules.append(_parse_mod(_string(match, 1), match.group(3), lineno))
            continue
        raise InstallError(f"Puppetfile line {lineno}: unrecognized statement '{line}'")

    names = [module.name for module in modules]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise InstallError(f"Puppetfile declares module(s) more than once: {', '.join(duplicates)}")
    return Puppetfile(modules=tuple(modules), forge=forge, moduledir=moduledir)


def _extract_release(archive: bytes, destination: Path) -> None:
    """Unpack a Forge release tarball, dropping its top-level directory."""
    with tarfile.open(fileobj=io.BytesIO(archive), mode="r:gz") as tar:
        members = []
        for member in tar.getmembers():
            parts = Path(member.name).parts
            if len(parts) < 2 or ".." in parts or member.issym() or member.islnk():
                continue
            member.name = str(Path(*parts[1:]))
            members.append(member)
        tar.extractall(destination, members=members)


class PuppetfileInstaller:
    """Installs the modules a Puppetfile declares into a module directory.

    Forge releases are downloaded over HTTP, git modules are shallow-cloned
    with the system ``git``. The module directory is replaced atomically per
    module so an interrupted install never leaves a half-written module.
    """

    def __init__(
        self,
        *,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        transport: httpx.BaseTransport | None = None,
        git_binary: str = "git",
    ):
        self.timeout_sec = timeout_sec
        self._transport = transport
        self.git_binary = git_binary

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=self.timeout_sec, transport=self._transport, follow_redirects=True
        )

    def _latest_version(self, client: httpx.Client, forge: str, module: ModuleSpec) -> str:
        response = client.get(f"{forge}/v3/modules/{module.author}-{module.name}")
        response.raise_for_status()
        release = response.json().get("current_release") or {}
        version = release.get("version")
        if not version:
            raise InstallError(f"Forge has no current release for {module.author}-{module.name}")
        return str(version)

    def _install_forge(self, client: httpx.Client, forge: str, module: ModuleSpec, target: Path) -> None:
        version = module.version or self._latest_version(client, forge, module)
        url = f"{forge}/v3/files/{module.author}-{module.name}-{version}.tar.gz"
        _log.info("module_download module=%s version=%s url=%s", module.name, version, url)
        response = client.get(url)
        response.raise_for_status()
        _extract_release(response.content, target)

    def _install_git(self, module: ModuleSpec, target: Path) -> None:
        if shutil.which(self.git_binary) is None:
            raise InstallError(f"{self.git_binary} is required to install module '{module.name}'")
        args = [self.git_binary, "clone", "--depth", "1"]
        if module.ref:
            args += ["--branch", module.ref]
        args += [str(module.git), str(target)]
        _log.info("module_clone module=%s source=%s ref=%s", module.name, module.git, module.ref)
        subprocess.run(args, capture_output=True, text=True, check=True)
        shutil.rmtree(target / ".git", ignore_errors=True)

    def install(self, puppetfile: Path, moduledir: Path) -> bool:
        puppetfile = Path(puppetfile)
        if not puppetfile.exists():
            raise FileError(f"Could not find a Puppetfile at {puppetfile}", puppetfile)
        try:
            text = puppetfile.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise FileError(f"Could not read Puppetfile at {puppetfile}: {exc}", puppetfile) from exc
        parsed = parse_puppetfile(text)
        if parsed.moduledir:
            moduledir = puppetfile.parent / parsed.moduledir
        moduledir = Path(moduledir)
        moduledir.mkdir(parents=True, exist_ok=True)
        _log.info(
            "puppetfile_install_start puppetfile=%s moduledir=%s modules=%d",
            puppetfile,
            moduledir,
            len(parsed.modules),
        )

        ok = True
        with self._client() as client:
            for module in parsed.modules:
                staging = Path(tempfile.mkdtemp(prefix=f".{module.name}-", dir=moduledir))
                try:
                    if module.is_git:
                        shutil.rmtree(staging)
                        self._install_git(module, staging)
                    else:
                        self._install_forge(client, parsed.forge, module, staging)
                    final = moduledir / module.name
                    if final.exists():
                        shutil.rmtree(final)
                    staging.replace(final)
                except (httpx.HTTPError, subprocess.CalledProcessError, tarfile.TarError, InstallError) as exc:
                    ok = False
                    _log.error("module_install_error module=%s error=%s", module.name, exc)
                finally:
                    if staging.exists():
                        shutil.rmtree(staging, ignore_errors=True)
        _log.info("puppetfile_install_end ok=%s", ok)
        return ok
