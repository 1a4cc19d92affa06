"""Matrix expansion.

The Cartesian product is generated lazily in declared axis order with the last
axis varying fastest, then filtered through the exclude predicates. The
resulting order is stable, so instance-id suffixes are deterministic.
"""

from __future__ import annotations

import itertools
from collections.abc import Iterator

from pipeline_orchestrator.orchestrator.errors import ConfigError
from pipeline_orchestrator.orchestrator.workflow.expressions import loose_equals, to_string
from pipeline_orchestrator.orchestrator.workflow.models import MatrixSpec

Combination = dict[str, object]


def validate_matrix(matrix: MatrixSpec, *, job: str = "") -> None:
    """Reject excludes that name an axis the matrix does not declare."""

    where = f" in job {job!r}" if job else ""
    if not matrix.axes:
        raise ConfigError(f"matrix{where} declares no axes")
    for entry in matrix.exclude:
        if not entry:
            raise ConfigError(f"matrix{where} has an empty exclude entry")
        unknown = sorted(set(entry) - set(matrix.axes))
        if unknown:
            raise ConfigError(
                f"matrix exclude{where} references unknown axis {unknown}; "
                f"declared axes: {list(matrix.axes)}"
            )


def _matches(combination: Combination, exclude: dict[str, object]) -> bool:
    return all(loose_equals(combination[key], value) for key, value in exclude.items())


def _product(matrix: MatrixSpec) -> Iterator[Combination]:
    names = list(matrix.axes)
    for values in itertools.product(*(matrix.axes[name] for name in names)):
        yield dict(zip(names, values, strict=True))


def expand(matrix: MatrixSpec) -> list[Combination]:
    """Expand a matrix into concrete axis-value mappings.

    An empty axis yields no combinations.
    """

    validate_matrix(matrix)
    return [
        combination
        for combination in _product(matrix)
        if not any(_matches(combination, exclude) for exclude in matrix.exclude)
    ]


def instance_id(job_name: str, combination: Combination) -> str:
    """`jobname-axis1value-axis2value`, or the bare job name for an empty combination."""

    if not combination:
        return job_name
    return "-".join([job_name, *(to_string(v) for v in combination.values())])
