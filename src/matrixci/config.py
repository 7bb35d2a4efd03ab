"""
Matrix document loading.

Two formats:
  - YAML (matrixci.yml): validated against the pydantic schema below
  - Python (matrixci_workflow.py): defines workflow() -> MatrixSpec or MATRIX
"""

from __future__ import annotations

import runpy
from pathlib import Path
from typing import Annotated, Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError

from .errors import ConfigError
from .model import CacheSpec, ExecutorKind, MatrixSpec, Step, TargetGroup, TargetOverride, TriggerRules

DEFAULT_MATRIX_FILES = ("matrixci.yml", "matrixci.yaml", "matrixci_workflow.py")

Str = Annotated[str, BeforeValidator(lambda v: v if isinstance(v, str) else str(v))]


# -------------------- Schema --------------------

class StepDoc(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    run: str
    cwd: Optional[str] = None
    env: Dict[str, Str] = Field(default_factory=dict)


class CacheDoc(BaseModel):
    model_config = ConfigDict(extra="forbid")

    namespace: str
    lock_files: List[str] = Field(default_factory=list)
    paths: List[str] = Field(default_factory=list)
    restore_prefixes: List[str] = Field(default_factory=list)


class OverrideDoc(BaseModel):
    """env/timeout are reserved; every other key becomes a matrix variable."""
    model_config = ConfigDict(extra="allow")

    env: Dict[str, Str] = Field(default_factory=dict)
    timeout: Optional[float] = Field(default=None, gt=0)


class GroupDoc(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    mode: ExecutorKind = ExecutorKind.NATIVE
    targets: List[str]
    steps: List[StepDoc] = Field(min_length=1)
    env: Dict[str, Str] = Field(default_factory=dict)
    vars: Dict[str, Str] = Field(default_factory=dict)
    cache: Optional[CacheDoc] = None
    timeout: Optional[float] = Field(default=None, gt=0)
    display: Optional[str] = None
    overrides: Dict[str, OverrideDoc] = Field(default_factory=dict)


class MatrixDoc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: str = "matrix"
    concurrency: Optional[str] = None
    env: Dict[str, Str] = Field(default_factory=dict)
    triggers: Any = Field(default=None, alias="on")
    groups: List[GroupDoc] = Field(min_length=1)


# -------------------- Conversion --------------------

def parse_triggers(raw: Any) -> TriggerRules:
    """
    Accepts the usual CI shapes:
        on: push
        on: [push, pull_request]
        on: {push: {branches: [master]}, pull_request: null}
    Missing -> every push and every pull request.
    """
    if raw is None:
        return TriggerRules(push_branches=["*"], pull_request=True)
    if isinstance(raw, str):
        raw = [raw]
    if isinstance(raw, list):
        unknown = sorted(set(raw) - {"push", "pull_request"})
        if unknown:
            raise ConfigError("Invalid trigger configuration", [f"on: unknown events {unknown}"])
        return TriggerRules(push_branches=["*"] if "push" in raw else None, pull_request="pull_request" in raw)
    if not isinstance(raw, dict):
        raise ConfigError("Invalid trigger configuration", [f"on: expected string, list or mapping, got {type(raw).__name__}"])

    unknown = sorted(set(raw) - {"push", "pull_request"})
    if unknown:
        raise ConfigError("Invalid trigger configuration", [f"on: unknown events {unknown}"])

    push_branches: Optional[List[str]] = None
    if "push" in raw:
        push = raw["push"]
        if push is False:
            push_branches = None
        elif push is None or push is True:
            push_branches = ["*"]
        elif isinstance(push, dict):
            push_branches = [str(b) for b in (push.get("branches") or ["*"])]
        else:
            raise ConfigError("Invalid trigger configuration", ["on.push: expected mapping with 'branches'"])

    pull_request = "pull_request" in raw and raw["pull_request"] is not False
    return TriggerRules(push_branches=push_branches, pull_request=pull_request)


def _group_from_doc(doc: GroupDoc) -> TargetGroup:
    overrides = {
        target: TargetOverride(
            vars={k: str(v) for k, v in (o.model_extra or {}).items()},
            env=dict(o.env),
            timeout=o.timeout,
        )
        for target, o in doc.overrides.items()
    }
    cache = None
    if doc.cache is not None:
        cache = CacheSpec(
            namespace=doc.cache.namespace,
            lock_files=tuple(doc.cache.lock_files),
            paths=tuple(doc.cache.paths),
            restore_prefixes=tuple(doc.cache.restore_prefixes),
        )
    return TargetGroup(
        name=doc.name,
        targets=list(doc.targets),
        steps=[Step(name=s.name, run=s.run, cwd=s.cwd, env=dict(s.env)) for s in doc.steps],
        mode=doc.mode,
        env=dict(doc.env),
        vars=dict(doc.vars),
        cache=cache,
        timeout=doc.timeout,
        display=doc.display,
        overrides=overrides,
    )


def _problems(e: ValidationError) -> List[str]:
    return [f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors()]


def matrix_from_dict(data: Dict[str, Any]) -> MatrixSpec:
    if not isinstance(data, dict):
        raise ConfigError("Invalid matrix document", [f"expected a mapping at the top level, got {type(data).__name__}"])
    data = dict(data)
    # YAML 1.1 reads a bare `on:` key as boolean True
    if True in data:
        data["on"] = data.pop(True)

    try:
        doc = MatrixDoc.model_validate(data)
    except ValidationError as e:
        raise ConfigError("Invalid matrix document", _problems(e)) from e

    try:
        return MatrixSpec(
            name=doc.name,
            groups=[_group_from_doc(g) for g in doc.groups],
            triggers=parse_triggers(doc.triggers),
            concurrency=doc.concurrency,
            env=dict(doc.env),
        )
    except ValueError as e:
        raise ConfigError("Invalid matrix document", [str(e)]) from e


# -------------------- Loading --------------------

def _load_yaml(path: Path) -> MatrixSpec:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"Could not parse {path.name}", [str(e)]) from e
    return matrix_from_dict(data)


def _load_python(path: Path) -> MatrixSpec:
    module_name = f"matrixci_workflow_{path.stem}"
    globals_dict = runpy.run_path(str(path), run_name=module_name)

    spec = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        spec = globals_dict["workflow"]()
    elif "MATRIX" in globals_dict:
        spec = globals_dict["MATRIX"]

    if not isinstance(spec, MatrixSpec):
        raise ConfigError(
            f"Could not load {path.name}",
            ["Workflow must return/define a MatrixSpec: define workflow() -> MatrixSpec or MATRIX = matrix(...)."],
        )
    return spec


def load_matrix(path: str | Path) -> MatrixSpec:
    """
    Load a matrix from a .yml/.yaml document or a .py workflow file.

    Raises:
        FileNotFoundError: path does not exist
        ConfigError: unsupported extension or invalid document
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise FileNotFoundError(f"Matrix file not found: {p}")
    if p.suffix in (".yml", ".yaml"):
        return _load_yaml(p)
    if p.suffix == ".py":
        return _load_python(p)
    raise ConfigError(f"Unsupported matrix file: {p.name}", ["expected .yml, .yaml or .py"])


def find_matrix_files(directory: str | Path = ".") -> List[Path]:
    """Default names first, then *_matrix.py and *.matrix.yml."""
    d = Path(directory)
    found = [d / name for name in DEFAULT_MATRIX_FILES if (d / name).exists()]
    for pattern in ("*_matrix.py", "*.matrix.yml", "*.matrix.yaml"):
        found.extend(p for p in sorted(d.glob(pattern)) if p not in found)
    return found
