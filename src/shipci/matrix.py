# matrix.py
from __future__ import annotations

import itertools
from typing import Dict, List

from .model import Job, JobInstance


def expand(job: Job, start_index: int = 0) -> List[JobInstance]:
    """
    Expand one job into concrete instances, one per matrix combination.

    Axes combine as a cartesian product in declaration order, first axis
    varying slowest:

        component=[frontend, backend] x py=[3.10, 3.11]
          -> (frontend, 3.10), (frontend, 3.11), (backend, 3.10), (backend, 3.11)

    A job without axes yields exactly one instance.
    """
    if not job.matrix:
        return [JobInstance(index=start_index, job=job)]

    names = [ax.name for ax in job.matrix]
    combos = itertools.product(*(ax.values for ax in job.matrix))
    return [
        JobInstance(index=start_index + i, job=job, matrix=dict(zip(names, combo)))
        for i, combo in enumerate(combos)
    ]


def matrix_env(binding: Dict[str, str]) -> Dict[str, str]:
    """component=frontend -> MATRIX_COMPONENT=frontend (ml-service style names too)."""
    return {f"MATRIX_{name.upper().replace('-', '_')}": value for name, value in binding.items()}
