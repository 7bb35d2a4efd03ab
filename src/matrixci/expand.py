# expand.py
from __future__ import annotations

import re
from dataclasses import replace
from typing import Dict, List, Mapping, Optional

from .model import CacheSpec, JobSpec, MatrixSpec, Step, TargetGroup

# ${{ matrix.target }}, ${{ matrix.display_name }}, ...
_MATRIX_EXPR = re.compile(r"\$\{\{\s*matrix\.([A-Za-z0-9_-]+)\s*\}\}")


def substitute(text: str, variables: Mapping[str, str]) -> str:
    """
    Replace ${{ matrix.<name> }} placeholders.

    Unknown names are left untouched so the problem shows up in the step
    output instead of silently becoming an empty argument.
    """
    def _sub(m: re.Match) -> str:
        name = m.group(1)
        return str(variables[name]) if name in variables else m.group(0)

    return _MATRIX_EXPR.sub(_sub, text)


def _target_vars(group: TargetGroup, target: str) -> Dict[str, str]:
    variables = {"target": target, "group": group.name}
    variables.update(group.vars)
    override = group.overrides.get(target)
    if override is not None:
        variables.update(override.vars)
    # target is never overridable, it is the job's identity
    variables["target"] = target
    return variables


def _expand_step(step: Step, variables: Mapping[str, str]) -> Step:
    return replace(
        step,
        run=substitute(step.run, variables),
        cwd=substitute(step.cwd, variables) if step.cwd is not None else None,
        env={k: substitute(v, variables) for k, v in step.env.items()},
    )


def _expand_cache(cache: Optional[CacheSpec], variables: Mapping[str, str]) -> Optional[CacheSpec]:
    if cache is None:
        return None
    return CacheSpec(
        namespace=substitute(cache.namespace, variables),
        lock_files=tuple(substitute(p, variables) for p in cache.lock_files),
        paths=tuple(substitute(p, variables) for p in cache.paths),
        restore_prefixes=tuple(substitute(p, variables) for p in cache.restore_prefixes),
    )


def expand(spec: MatrixSpec) -> List[JobSpec]:
    """
    Flatten every group's targets into one JobSpec per target.

    Order: group order, then target order within the group. Pure and total:
    target identifiers are not validated here (that is the toolchain
    resolver's job).
    """
    jobs: List[JobSpec] = []
    for group in spec.groups:
        for target in group.targets:
            variables = _target_vars(group, target)
            override = group.overrides.get(target)

            env: Dict[str, str] = dict(spec.env)
            env.update(group.env)
            if override is not None:
                env.update(override.env)
            env = {k: substitute(v, variables) for k, v in env.items()}

            timeout = group.timeout
            if override is not None and override.timeout is not None:
                timeout = override.timeout

            display_template = group.display or f"{group.name} - ${{{{ matrix.target }}}}"

            jobs.append(
                JobSpec(
                    index=len(jobs),
                    name=f"{group.name}/{target}",
                    group=group.name,
                    target=target,
                    kind=group.mode,
                    steps=tuple(_expand_step(s, variables) for s in group.steps),
                    env=env,
                    vars=variables,
                    cache=_expand_cache(group.cache, variables),
                    timeout=timeout,
                    display=substitute(display_template, variables),
                )
            )
    return jobs
