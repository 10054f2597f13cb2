"""Resource manifests for ``bolt apply``.

A manifest is a YAML document listing resources::

    resources:
      - type: file
        title: /etc/motd
        content: "managed by bolt\\n"
        mode: "0644"
      - type: exec
        title: reload-nginx
        command: systemctl reload nginx
        onlyif: test -f /etc/nginx/nginx.conf

Each resource is compiled into a guarded shell fragment. Fragments report
``BOLT_RESOURCE<TAB>title<TAB>status<TAB>message`` lines that are parsed back
into a per-target report.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from typing import Any, Mapping

import yaml

from boltpy.executors import CommandOutput
from boltpy.models import RuntimeFailure, Target, TargetResult

RESOURCE_TYPES = ("file", "exec")
_FILE_ENSURE = ("present", "absent", "directory")
_REPORT_PREFIX = "BOLT_RESOURCE\t"

_PRELUDE = """set -u
__failed=0
__report() { printf 'BOLT_RESOURCE\\t%s\\t%s\\t%s\\n' "$1" "$2" "$3"; }
"""


@dataclass(frozen=True)
class Resource:
    type: str
    title: str
    attributes: Mapping[str, Any] = field(default_factory=dict)

    @property
    def ref(self) -> str:
        return f"{self.type.capitalize()}[{self.title}]"


@dataclass(frozen=True)
class Catalog:
    resources: tuple[Resource, ...]
    filename: str | None = None

    def script(self, *, noop: bool) -> str:
        parts = [_PRELUDE, f"__noop={1 if noop else 0}\n"]
        for resource in self.resources:
            if resource.type == "file":
                parts.append(_file_fragment(resource))
            else:
                parts.append(_exec_fragment(resource))
        parts.append('exit "$__failed"\n')
        return "".join(parts)


def _file_fragment(resource: Resource) -> str:
    ref = shlex.quote(resource.ref)
    path = shlex.quote(str(resource.attributes.get("path", resource.title)))
    ensure = resource.attributes.get("ensure", "present")
    if ensure == "absent":
        return f"""if [ ! -e {path} ]; then __report {ref} unchanged ''
elif [ "$__noop" = 1 ]; then __report {ref} noop 'would remove'
elif rm -rf {path}; then __report {ref} changed 'removed'
else __report {ref} failed 'could not remove'; __failed=1; fi
"""
    if ensure == "directory":
        return f"""if [ -d {path} ]; then __report {ref} unchanged ''
elif [ "$__noop" = 1 ]; then __report {ref} noop 'would create directory'
elif mkdir -p {path}; then __report {ref} changed 'directory created'
else __report {ref} failed 'could not create directory'; __failed=1; fi
"""
    content = shlex.quote(str(resource.attributes.get("content", "")))
    mode = resource.attributes.get("mode")
    chmod = f" && chmod {shlex.quote(str(mode))} {path}" if mode else ""
    return f"""__content={content}
if [ -f {path} ] && [ "$(cat {path}; printf x)" = "${{__content}}x" ]; then __report {ref} unchanged ''
elif [ "$__noop" = 1 ]; then __report {ref} noop 'content would change'
elif printf '%s' "$__content" > {path}{chmod}; then __report {ref} changed 'content changed'
else __report {ref} failed 'could not write content'; __failed=1; fi
"""


def _exec_fragment(resource: Resource) -> str:
    ref = shlex.quote(resource.ref)
    command = str(resource.attributes["command"])
    guards: list[str] = []
    if resource.attributes.get("unless"):
        guards.append(f"! ( {resource.attributes['unless']} ) >/dev/null 2>&1")
    if resource.attributes.get("onlyif"):
        guards.append(f"( {resource.attributes['onlyif']} ) >/dev/null 2>&1")
    guard = " && ".join(guards) if guards else "true"
    return f"""if ! {{ {guard}; }}; then __report {ref} unchanged ''
elif [ "$__noop" = 1 ]; then __report {ref} noop 'would run'
elif ( {command} ); then __report {ref} changed 'executed successfully'
else __report {ref} failed "returned $?"; __failed=1; fi
"""


def _resource(raw: Any, index: int) -> Resource:
    if not isinstance(raw, Mapping):
        raise RuntimeFailure(f"Resource #{index} must be a mapping")
    res_type = raw.get("type")
    if res_type not in RESOURCE_TYPES:
        raise RuntimeFailure(
            f"Resource #{index} has unsupported type {res_type!r}; "
            f"expected one of {', '.join(RESOURCE_TYPES)}"
        )
    title = raw.get("title")
    if not isinstance(title, str) or not title.strip():
        raise RuntimeFailure(f"Resource #{index} ({res_type}) is missing a 'title'")
    attributes = {str(k): v for k, v in raw.items() if k not in ("type", "title")}
    if res_type == "exec" and not isinstance(attributes.get("command"), str):
        raise RuntimeFailure(f"Exec[{title}] requires a 'command'")
    if res_type == "file" and attributes.get("ensure", "present") not in _FILE_ENSURE:
        raise RuntimeFailure(
            f"File[{title}] ensure must be one of {', '.join(_FILE_ENSURE)}"
        )
    return Resource(type=str(res_type), title=title, attributes=attributes)


def compile_manifest(code: str, filename: str | None = None) -> Catalog:
    label = filename or "<inline code>"
    try:
        data = yaml.safe_load(code)
    except yaml.YAMLError as exc:
        raise RuntimeFailure(f"Could not parse manifest {label}: {exc}") from exc
    if isinstance(data, Mapping):
        data = data.get("resources")
    if data is None:
        data = []
    if not isinstance(data, list):
        raise RuntimeFailure(f"Manifest {label} must contain a list of resources")
    resources = tuple(_resource(item, index) for index, item in enumerate(data, 1))
    titles = [resource.ref for resource in resources]
    duplicates = sorted({ref for ref in titles if titles.count(ref) > 1})
    if duplicates:
        raise RuntimeFailure(f"Duplicate declaration in {label}: {', '.join(duplicates)}")
    return Catalog(resources=resources, filename=filename)


def build_apply_result(target: Target, output: CommandOutput, *, noop: bool) -> TargetResult:
    statuses: dict[str, dict[str, str]] = {}
    for line in output.stdout.splitlines():
        if not line.startswith(_REPORT_PREFIX):
            continue
        _, ref, status, message = (line.split("\t", 3) + ["", "", ""])[:4]
        statuses[ref] = {"status": status, "message": message}

    counts = {name: 0 for name in ("changed", "unchanged", "noop", "failed")}
    for item in statuses.values():
        counts[item["status"]] = counts.get(item["status"], 0) + 1

    failed = output.exit_code != 0 or counts["failed"] > 0
    if failed:
        overall = "failed"
    elif counts["changed"]:
        overall = "changed"
    else:
        overall = "unchanged"
    value: dict[str, Any] = {
        "report": {
            "status": overall,
            "noop": noop,
            "resource_statuses": statuses,
            "metrics": counts,
        },
        "_output": ", ".join(f"{name}: {count}" for name, count in counts.items()),
    }
    if failed:
        value["_error"] = {
            "kind": "bolt/apply-failure",
            "msg": f"Resources failed to apply for {target.name}",
            "details": {"exit_code": output.exit_code, "stderr": output.stderr},
        }
    return TargetResult(
        target=target,
        status="failure" if failed else "success",
        value=value,
        action="apply",
    )
