import numpy as np
import pytest

from embedding import compute_diffusion_map, compute_umap, marker_adata


def test_marker_adata_uses_only_requested_markers(cell_table):
    adata = marker_adata(cell_table, ['CD69', 'CD103'])

    assert adata.shape == (30, 2)
    assert list(adata.var_names) == ['CD69', 'CD103']
    np.testing.assert_allclose(adata.X[:, 0], cell_table['CD69'].to_numpy(), rtol=1e-6)


def test_marker_adata_unknown_marker(cell_table):
    with pytest.raises(KeyError, match="CD999"):
        marker_adata(cell_table, ['CD69', 'CD999'])


def test_diffusion_map_has_at_least_three_components(cell_table, markers):
    dcs = compute_diffusion_map(cell_table, markers, n_neighbors=5)

    assert list(dcs.columns) == ['DC1', 'DC2', 'DC3']
    assert dcs.index.equals(cell_table.index)
    assert np.isfinite(dcs.to_numpy()).all()


def test_diffusion_map_extra_components(cell_table, markers):
    dcs = compute_diffusion_map(cell_table, markers, n_neighbors=5, n_comps=5)

    assert list(dcs.columns) == ['DC1', 'DC2', 'DC3', 'DC4', 'DC5']


def test_diffusion_map_rejects_fewer_than_three_components(cell_table, markers):
    with pytest.raises(ValueError, match=">= 3"):
        compute_diffusion_map(cell_table, markers, n_comps=2)


def test_umap_is_exactly_two_dimensional(cell_table, markers):
    emb = compute_umap(cell_table, markers, n_neighbors=5, min_dist=0.3, seed=0)

    assert list(emb.columns) == ['UMAP1', 'UMAP2']
    assert len(emb) == len(cell_table)
    assert emb.index.equals(cell_table.index)
    assert np.isfinite(emb.to_numpy()).all()


@pytest.mark.parametrize("n_cells", [3, 4])
def test_diffusion_map_rejects_too_few_cells(cell_table, markers, n_cells):
    tiny = cell_table.iloc[:n_cells]
    with pytest.raises(ValueError, match="needs more than 4 cells"):
        compute_diffusion_map(tiny, markers, n_neighbors=2)


def test_diffusion_map_on_five_cells_keeps_three_components(cell_table, markers):
    dcs = compute_diffusion_map(cell_table.iloc[:5], markers, n_neighbors=3)

    assert list(dcs.columns) == ['DC1', 'DC2', 'DC3']
    assert len(dcs) == 5


@pytest.mark.parametrize("n_cells", [3, 4])
def test_umap_rejects_too_few_cells(cell_table, markers, n_cells):
    with pytest.raises(ValueError, match="UMAP needs more than 4 cells"):
        compute_umap(cell_table.iloc[:n_cells], markers, n_neighbors=2)
