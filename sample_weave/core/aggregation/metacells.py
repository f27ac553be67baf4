"""Meta-cell aggregation of raw counts by cluster.

Pools the counts of every cell in a cluster into one profile per sample, so
downstream differential expression can treat samples as replicates.
"""

import logging
from typing import Dict, Mapping, Union

import numpy as np
import pandas as pd
from scipy import sparse

from ..errors import InputError
from ..registry import Sample, SampleRegistry

logger = logging.getLogger(__name__)


def _as_series(partition: Union[pd.Series, Mapping[str, object]]) -> pd.Series:
    if not isinstance(partition, pd.Series):
        partition = pd.Series(dict(partition), dtype=object)
    partition = partition.dropna().copy()
    partition.index = partition.index.astype(str)
    return partition.astype(str)


def pool_sample_by_cluster(
    sample: Sample,
    partition: Union[pd.Series, Mapping[str, object]],
) -> pd.DataFrame:
    """Sum a sample's counts over the cells of each cluster.

    Parameters
    ----------
    sample : Sample
        Sample to pool
    partition : pd.Series or Mapping
        Cell id -> cluster; cells of the sample without a cluster are skipped

    Returns
    -------
    pd.DataFrame
        Cluster x gene summed counts (clusters sorted by name)
    """
    partition = _as_series(partition)
    clusters = partition.reindex(pd.Index(sample.cell_ids))
    assigned = clusters.notna().to_numpy()
    if not assigned.any():
        return pd.DataFrame(columns=list(sample.gene_names), dtype=np.float64)

    categorical = pd.Categorical(clusters[assigned])
    rows = categorical.codes
    cells = np.flatnonzero(assigned)
    membership = sparse.csr_matrix(
        (np.ones(len(cells)), (rows, cells)),
        shape=(len(categorical.categories), sample.n_cells),
    )
    pooled = membership @ sample.counts
    return pd.DataFrame(
        pooled.toarray(),
        index=pd.Index([str(c) for c in categorical.categories], name="cluster"),
        columns=list(sample.gene_names),
    )


def cluster_count_matrices(
    registry: SampleRegistry,
    partition: Union[pd.Series, Mapping[str, object]],
    common_genes: bool = True,
) -> Dict[str, pd.DataFrame]:
    """Per-cluster sample x gene pooled count matrices.

    Parameters
    ----------
    registry : SampleRegistry
        Samples to pool
    partition : pd.Series or Mapping
        Cell id -> cluster over any subset of cells
    common_genes : bool
        If True, keep genes measured in every sample; otherwise take the union
        and fill unmeasured genes with 0

    Returns
    -------
    Dict[str, pd.DataFrame]
        Cluster -> (sample x gene) counts. Samples with no cells in a cluster
        are left out of that cluster's matrix.
    """
    if len(registry) == 0:
        raise InputError("Registry has no samples")
    partition = _as_series(partition)

    gene_sets = [list(s.gene_names) for s in registry]
    if common_genes:
        shared = set(gene_sets[0]).intersection(*gene_sets[1:])
        genes = [g for g in gene_sets[0] if g in shared]
    else:
        seen: Dict[str, None] = {}
        for names in gene_sets:
            for gene in names:
                seen.setdefault(gene, None)
        genes = list(seen)

    if not genes:
        raise InputError("Samples share no genes", {"n_samples": len(registry)})

    rows: Dict[str, Dict[str, pd.Series]] = {}
    for sample in registry:
        pooled = pool_sample_by_cluster(sample, partition)
        pooled = pooled.reindex(columns=genes, fill_value=0.0)
        for cluster, profile in pooled.iterrows():
            rows.setdefault(str(cluster), {})[sample.sample_id] = profile

    matrices = {}
    for cluster in sorted(rows):
        df = pd.DataFrame.from_dict(rows[cluster], orient="index")
        df.index.name = "sample_id"
        matrices[cluster] = df

    logger.info(
        "Pooled counts for %d clusters over %d samples (%d genes, %s)",
        len(matrices),
        len(registry),
        len(genes),
        "common" if common_genes else "union",
    )
    return matrices
