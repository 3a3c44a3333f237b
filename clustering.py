import numpy as np
import pandas as pd
import scanpy as sc
from minisom import MiniSom
from sklearn.cluster import AgglomerativeClustering
from sklearn.metrics import pairwise_distances_argmin

from embedding import marker_adata


# ──────────────────────────────────────────────────────────────────────────────
# FlowSOM-style clustering
# ──────────────────────────────────────────────────────────────────────────────

def assign_som_clusters(table, markers, n_clusters=14, xdim=10, ydim=10, seed=42,
                        n_iterations=None, sigma=1.0, learning_rate=0.5,
                        label_prefix='CD4'):
    """
    Clusters cells on a self-organizing map and collapses the SOM nodes
    into ``n_clusters`` metaclusters.

    Cells are assigned to their nearest codebook vector; codebook vectors
    are grouped by average-linkage hierarchical clustering. Labels are
    ``"{label_prefix}-{k}"`` with k = 1..n_clusters, and the categorical
    always carries all ``n_clusters`` categories even if some hold no cells.

    Args:
        table: Cell table.
        markers: Marker columns used for training.
        n_clusters: Number of metaclusters.
        xdim, ydim: SOM grid size.
        seed: Random seed for weight initialisation and training order.
        n_iterations: Batch training iterations (default: 10 passes over the data).
        sigma, learning_rate: MiniSom neighbourhood radius and learning rate.
        label_prefix: Prefix of the metacluster labels.

    Returns:
        DataFrame indexed like ``table`` with ``som_node`` and ``som_cluster``.
    """
    n_nodes = xdim * ydim
    if not 1 <= n_clusters <= n_nodes:
        raise ValueError(f"n_clusters must be between 1 and the number of SOM nodes "
                         f"({n_nodes}), got {n_clusters}")

    X = marker_adata(table, markers).X
    if n_iterations is None:
        n_iterations = 10 * X.shape[0]

    print(f"⚙️  Training {xdim}x{ydim} SOM on {len(markers)} markers (seed={seed})...")
    som = MiniSom(xdim, ydim, X.shape[1], sigma=sigma,
                  learning_rate=learning_rate, random_seed=seed)
    som.random_weights_init(X)
    som.train_batch(X, n_iterations, verbose=False)

    codes = som.get_weights().reshape(n_nodes, X.shape[1])
    nodes = pairwise_distances_argmin(X, codes)

    print(f"🌳 Metaclustering {n_nodes} SOM nodes into {n_clusters} groups...")
    if n_clusters == 1:
        node_meta = np.zeros(n_nodes, dtype=int)
    else:
        node_meta = AgglomerativeClustering(n_clusters=n_clusters,
                                            linkage='average').fit_predict(codes)

    categories = [f'{label_prefix}-{k + 1}' for k in range(n_clusters)]
    labels = pd.Categorical.from_codes(node_meta[nodes], categories=categories)

    n_used = len(np.unique(node_meta[nodes]))
    print(f"   ✅ {n_used}/{n_clusters} metaclusters populated.")
    return pd.DataFrame({'som_node': nodes.astype(int), 'som_cluster': labels},
                        index=table.index)


# ──────────────────────────────────────────────────────────────────────────────
# Graph-based clustering
# ──────────────────────────────────────────────────────────────────────────────

def assign_graph_clusters(table, markers, n_neighbors=30, resolution=1.0, seed=0):
    """
    Leiden community detection over a kNN graph of the marker subset.

    The number of communities is emergent; larger ``n_neighbors`` yields
    fewer, larger communities.
    """
    adata = marker_adata(table, markers)
    print(f"🔗 Computing Neighbor Graph for community detection (k={n_neighbors})...")
    sc.pp.neighbors(adata, n_neighbors=n_neighbors, use_rep='X', random_state=seed)
    print(f"🕸️  Running Leiden (resolution={resolution})...")
    sc.tl.leiden(adata, resolution=resolution, random_state=seed,
                 flavor='igraph', n_iterations=2, directed=False,
                 key_added='graph_cluster')

    labels = adata.obs['graph_cluster']
    print(f"   ✅ {labels.nunique()} communities found.")
    return pd.DataFrame({'graph_cluster': pd.Categorical(labels.values,
                                                         categories=labels.cat.categories)},
                        index=table.index)
