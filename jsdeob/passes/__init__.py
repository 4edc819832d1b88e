"""Basic cleanup passes run by :mod:`jsdeob.pipeline`.

Every pass owns its tree: it parses the code it is given, rewrites that tree
and prints it again.  Passes return a :class:`~jsdeob.models.StageResult`
instead of mutating shared logs.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from ..jsast import Node, generate, parse
from ..models import StageResult, Transformation

LOG = logging.getLogger(__name__)

Rewrite = Callable[[Node], int]


def run_pass(
    kind: str,
    code: str,
    rewrite: Rewrite,
    describe: Callable[[int], str],
    *,
    always_report: bool = False,
) -> StageResult:
    """Parse ``code``, apply ``rewrite`` and print the tree if it changed.

    ``rewrite`` returns the number of changes it made.  Passes that only
    report when something changed get ``transformation=None`` otherwise.
    """

    try:
        tree = parse(code)
        changes = rewrite(tree)
        output = generate(tree) if changes or always_report else code
    except Exception as exc:
        LOG.warning("%s failed: %s", kind, exc)
        return StageResult(
            code=code,
            transformation=Transformation(kind, "Failed", False, {"error": str(exc)}),
            error=exc,
        )
    transformation: Optional[Transformation] = None
    if changes or always_report:
        transformation = Transformation(kind, describe(changes), True)
        LOG.debug("%s: %d changes", kind, changes)
    return StageResult(code=output, transformation=transformation, metadata={"changes": changes})


from . import constant_folding, rename, simplify, string_arrays, string_decode, unflatten  # noqa: E402
from .string_arrays import StringArrayTable  # noqa: E402

__all__ = [
    "StringArrayTable",
    "constant_folding",
    "rename",
    "run_pass",
    "simplify",
    "string_arrays",
    "string_decode",
    "unflatten",
]
