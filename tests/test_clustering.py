import pandas as pd
import pytest

from clustering import assign_graph_clusters, assign_som_clusters
from flow_loader import load_cluster_files


def test_som_same_seed_gives_identical_labels(cell_table, markers):
    first = assign_som_clusters(cell_table, markers, n_clusters=4, xdim=3, ydim=3, seed=7)
    second = assign_som_clusters(cell_table, markers, n_clusters=4, xdim=3, ydim=3, seed=7)

    pd.testing.assert_frame_equal(first, second)


def test_som_defaults_are_reproducible_on_loaded_exports(cluster_dir, markers):
    table = load_cluster_files(cluster_dir, pattern="*.csv")

    first = assign_som_clusters(table, markers, seed=42)
    second = assign_som_clusters(table, markers, seed=42)

    pd.testing.assert_frame_equal(first, second)
    assert first['som_node'].between(0, 99).all()


@pytest.mark.parametrize("seed", [1, 2])
def test_som_defaults_keep_fourteen_metaclusters_for_any_seed(cluster_dir, markers, seed):
    table = load_cluster_files(cluster_dir, pattern="*.csv")

    out = assign_som_clusters(table, markers, seed=seed)

    labels = out['som_cluster']
    assert labels.dtype.name == 'category'
    assert list(labels.cat.categories) == [f'CD4-{k}' for k in range(1, 15)]
    assert 1 <= labels.nunique() <= 14
    assert labels.notna().all()


def test_som_output_is_row_aligned(cell_table, markers):
    out = assign_som_clusters(cell_table, markers, n_clusters=3, xdim=2, ydim=2,
                              label_prefix='T')

    assert out.index.equals(cell_table.index)
    assert list(out.columns) == ['som_node', 'som_cluster']
    assert out['som_node'].between(0, 3).all()
    assert set(out['som_cluster'].cat.categories) == {'T-1', 'T-2', 'T-3'}


def test_som_cells_on_the_same_node_share_a_metacluster(cell_table, markers):
    out = assign_som_clusters(cell_table, markers, n_clusters=3, xdim=3, ydim=3)

    assert (out.groupby('som_node', observed=True)['som_cluster'].nunique() == 1).all()


def test_som_rejects_more_metaclusters_than_nodes(cell_table, markers):
    with pytest.raises(ValueError, match="n_clusters"):
        assign_som_clusters(cell_table, markers, n_clusters=10, xdim=3, ydim=3)


def test_som_unknown_marker(cell_table):
    with pytest.raises(KeyError):
        assign_som_clusters(cell_table, ['CD999'], n_clusters=2, xdim=2, ydim=2)


def test_graph_clusters_one_label_per_cell(cell_table, markers):
    out = assign_graph_clusters(cell_table, markers, n_neighbors=5)

    assert list(out.columns) == ['graph_cluster']
    assert len(out) == len(cell_table)
    assert out.index.equals(cell_table.index)
    assert out['graph_cluster'].dtype.name == 'category'
    assert out['graph_cluster'].notna().all()
    assert 1 <= out['graph_cluster'].nunique() <= len(cell_table)


def test_graph_clusters_larger_k_gives_no_more_communities(cell_table, markers):
    small_k = assign_graph_clusters(cell_table, markers, n_neighbors=3)
    large_k = assign_graph_clusters(cell_table, markers, n_neighbors=25)

    assert large_k['graph_cluster'].nunique() <= small_k['graph_cluster'].nunique()
