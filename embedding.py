import numpy as np
import pandas as pd
import anndata as ad
import scanpy as sc


def marker_adata(table, markers):
    """Builds a lightweight AnnData over the given marker columns of ``table``."""
    missing = [m for m in markers if m not in table.columns]
    if missing:
        raise KeyError(f"Markers not found in table: {missing}")
    X = table[list(markers)].to_numpy(dtype=np.float32)
    obs = pd.DataFrame(index=table.index.astype(str))
    adata = ad.AnnData(X=X, obs=obs)
    adata.var_names = [str(m) for m in markers]
    return adata


def compute_diffusion_map(table, markers, n_neighbors=30, n_comps=3):
    """
    Computes a diffusion-map embedding over a marker subset.

    The trivial first eigenvector returned by ``sc.tl.diffmap`` is dropped,
    so the result holds ``DC1..DC{n_comps}``.

    Args:
        table: Cell table.
        markers: Marker columns used to build the kNN kernel.
        n_neighbors: k for the local kernel.
        n_comps: Number of diffusion components to keep (at least 3).

    Returns:
        DataFrame indexed like ``table`` with columns ``DC1..DC{n_comps}``.
    """
    if n_comps < 3:
        raise ValueError(f"n_comps must be >= 3, got {n_comps}")

    adata = marker_adata(table, markers)
    if adata.n_obs <= n_comps + 1:
        raise ValueError(f"Diffusion map with {n_comps} components needs more than "
                         f"{n_comps + 1} cells, got {adata.n_obs}.")
    print(f"🔗 Computing Neighbor Graph for diffusion map (k={n_neighbors})...")
    sc.pp.neighbors(adata, n_neighbors=n_neighbors, use_rep='X')
    print(f"🗺️  Computing Diffusion Map ({n_comps} components)...")
    sc.tl.diffmap(adata, n_comps=n_comps + 1)

    dcs = np.asarray(adata.obsm['X_diffmap'])[:, 1:n_comps + 1]
    columns = [f'DC{i + 1}' for i in range(n_comps)]
    return pd.DataFrame(dcs, index=table.index, columns=columns)


def compute_umap(table, markers, n_neighbors=15, min_dist=0.5, seed=42):
    """Computes a 2-D UMAP embedding; returns ``UMAP1``/``UMAP2`` indexed like ``table``."""
    adata = marker_adata(table, markers)
    # spectral initialisation needs more cells than eigenvectors
    if adata.n_obs <= 4:
        raise ValueError(f"UMAP needs more than 4 cells, got {adata.n_obs}.")
    print(f"🔗 Computing Neighbor Graph for UMAP (k={n_neighbors})...")
    sc.pp.neighbors(adata, n_neighbors=n_neighbors, use_rep='X', random_state=seed)
    print(f"🎨 Computing UMAP (min_dist={min_dist})...")
    sc.tl.umap(adata, min_dist=min_dist, n_components=2, random_state=seed)

    coords = np.asarray(adata.obsm['X_umap'])
    return pd.DataFrame(coords, index=table.index, columns=['UMAP1', 'UMAP2'])
