"""Shared fixtures: small synthetic per-cluster event exports."""

import numpy as np
import pandas as pd
import pytest

MARKERS = ['CD45RA', 'CCR7', 'CD69', 'CD103']

# Cluster means step along a gradient so the kNN graph stays connected
CLUSTER_MEANS = {'A': 0.0, 'B': 2.0, 'C': 4.0}


def make_cluster_frame(mean, n_cells, rng, sample_codes=(1, 2)):
    data = rng.normal(loc=mean, scale=1.0, size=(n_cells, len(MARKERS)))
    df = pd.DataFrame(data, columns=MARKERS)
    df['SampleID'] = [float(sample_codes[i % len(sample_codes)]) for i in range(n_cells)]
    return df


@pytest.fixture
def markers():
    return list(MARKERS)


@pytest.fixture
def cluster_dir(tmp_path):
    """Three CSV exports, clusters A/B/C with 10 cells each."""
    rng = np.random.default_rng(0)
    export_dir = tmp_path / "exports"
    export_dir.mkdir()
    for name, mean in CLUSTER_MEANS.items():
        make_cluster_frame(mean, 10, rng).to_csv(export_dir / f"{name}.csv", index=False)
    return export_dir


@pytest.fixture
def decode_file(tmp_path):
    path = tmp_path / "decode.txt"
    path.write_text("1: donor_01.fcs\n\n2: donor_02.fcs\n")
    return path


@pytest.fixture
def cell_table(markers):
    """In-memory table equivalent to the ``cluster_dir`` exports."""
    rng = np.random.default_rng(0)
    frames = []
    for name, mean in CLUSTER_MEANS.items():
        df = make_cluster_frame(mean, 10, rng)
        df['source_cluster'] = name
        frames.append(df)
    return pd.concat(frames, ignore_index=True)
