"""Read-only registry of samples with global cell id checks."""

from __future__ import annotations

import itertools
import logging
from typing import Dict, Iterator, List, Optional, Tuple

import numpy as np
import pandas as pd

from ..errors import DuplicateCellIdError, InputError
from .sample import Sample

logger = logging.getLogger(__name__)


class SampleRegistry:
    """Insertion-ordered collection of samples.

    Cell ids must be unique across every registered sample; the registry is
    the single place where that invariant is checked. Samples are never
    modified after registration.

    Example
    -------
    >>> registry = SampleRegistry()
    >>> registry.register(sample_a)
    >>> registry.register(sample_b)
    >>> registry.pairs()
    [('sample_a', 'sample_b')]
    """

    def __init__(self, samples: Optional[List[Sample]] = None):
        self._samples: Dict[str, Sample] = {}
        self._cell_owner: Dict[str, str] = {}
        for sample in samples or []:
            self.register(sample)

    def register(self, sample: Sample) -> Sample:
        """Add a sample to the registry.

        Raises
        ------
        DuplicateCellIdError
            If the sample id or any cell id is already registered
        """
        if not isinstance(sample, Sample):
            raise InputError(f"Expected Sample, got {type(sample).__name__}")
        if sample.sample_id in self._samples:
            raise DuplicateCellIdError(
                f"Sample '{sample.sample_id}' is already registered",
                {"sample_id": sample.sample_id},
            )

        collisions = [c for c in sample.cell_ids if c in self._cell_owner]
        if collisions:
            owners = sorted({self._cell_owner[c] for c in collisions})
            raise DuplicateCellIdError(
                f"{len(collisions)} cell ids of sample '{sample.sample_id}' "
                "are already registered",
                {
                    "sample_id": sample.sample_id,
                    "other_samples": owners,
                    "examples": collisions[:5],
                },
            )

        self._samples[sample.sample_id] = sample
        for cell_id in sample.cell_ids:
            self._cell_owner[cell_id] = sample.sample_id

        logger.info(
            "Registered sample %s (%d cells, %d genes)",
            sample.sample_id,
            sample.n_cells,
            sample.n_genes,
        )
        return sample

    def get(self, sample_id: str) -> Sample:
        try:
            return self._samples[sample_id]
        except KeyError:
            raise InputError(f"Unknown sample '{sample_id}'") from None

    def __getitem__(self, sample_id: str) -> Sample:
        return self.get(sample_id)

    def __contains__(self, sample_id: object) -> bool:
        return sample_id in self._samples

    def __iter__(self) -> Iterator[Sample]:
        return iter(self._samples.values())

    def __len__(self) -> int:
        return len(self._samples)

    @property
    def sample_ids(self) -> List[str]:
        return list(self._samples)

    @property
    def n_cells(self) -> int:
        return len(self._cell_owner)

    def sample_of(self, cell_id: str) -> str:
        """Return the id of the sample owning a cell."""
        try:
            return self._cell_owner[str(cell_id)]
        except KeyError:
            raise InputError(f"Unknown cell '{cell_id}'") from None

    def pairs(self) -> List[Tuple[str, str]]:
        """All unordered sample pairs, each sorted by sample id."""
        ids = sorted(self._samples)
        return list(itertools.combinations(ids, 2))

    def cell_index(self) -> pd.DataFrame:
        """Global cell table in registry order.

        Returns
        -------
        pd.DataFrame
            Indexed by cell id, with columns ``sample_id`` and
            ``local_index`` (row position inside the sample)
        """
        frames = []
        for sample in self._samples.values():
            frames.append(
                pd.DataFrame(
                    {
                        "sample_id": sample.sample_id,
                        "local_index": np.arange(sample.n_cells),
                    },
                    index=pd.Index(sample.cell_ids, name="cell_id"),
                )
            )
        if not frames:
            return pd.DataFrame(
                {"sample_id": pd.Series([], dtype=object), "local_index": pd.Series([], dtype=int)},
                index=pd.Index([], name="cell_id"),
            )
        return pd.concat(frames)

    def offsets(self) -> Dict[str, int]:
        """Global node offset of each sample's first cell."""
        offsets = {}
        total = 0
        for sample in self._samples.values():
            offsets[sample.sample_id] = total
            total += sample.n_cells
        return offsets

    def summary_dict(self) -> Dict[str, object]:
        """Return summary dictionary for JSON export."""
        return {
            "n_samples": len(self),
            "n_cells": self.n_cells,
            "samples": [s.summary_dict() for s in self],
        }
