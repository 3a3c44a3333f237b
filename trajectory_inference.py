import numpy as np
import pandas as pd
from scipy import sparse
from scipy.sparse.csgraph import breadth_first_order, minimum_spanning_tree
from scipy.spatial.distance import cdist


class SlingshotTrajectory:
    def __init__(self, root_label, approx_points=150, max_iter=10, tol=1e-3,
                 bandwidth=0.1, chunk_size=4096):
        """
        Lineage and pseudotime inference over clustered low-dimensional data.

        Args:
            root_label: Cluster the trajectory starts from.
            approx_points: Number of points each principal curve is evaluated
                           on. More points follow the data more closely and
                           cost more compute.
            max_iter: Maximum principal-curve refinement iterations.
            tol: Relative change of the total squared distance below which
                 refinement stops.
            bandwidth: Gaussian smoother width, as a fraction of the arc
                       length range.
            chunk_size: Cells projected at once.
        """
        if approx_points is None or approx_points < 2:
            raise ValueError(f"approx_points must be >= 2, got {approx_points}")
        if bandwidth <= 0:
            raise ValueError(f"bandwidth must be positive, got {bandwidth}")
        self.root_label = root_label
        self.approx_points = int(approx_points)
        self.max_iter = max_iter
        self.tol = tol
        self.bandwidth = bandwidth
        self.chunk_size = chunk_size

        self.clusters = None
        self.centroids = None
        self.mst = None
        self.lineages = None
        self.curves = None
        self.pseudotime_ = None

    # ──────────────────────────────────────────────────────────────────────────
    # Lineage discovery
    # ──────────────────────────────────────────────────────────────────────────

    def fit_lineages(self, coords, labels):
        """
        Connects cluster centroids with a minimum spanning tree and reads off
        one lineage per leaf, each an ordered cluster path from the root.
        """
        coords, labels = self._check_inputs(coords, labels)
        clusters = sorted(pd.unique(labels[pd.notna(labels)]).tolist(), key=str)

        if self.root_label not in clusters:
            raise ValueError(f"Root label '{self.root_label}' not found. "
                             f"Available clusters: {clusters}")

        print(f"🌳 Building cluster MST over {len(clusters)} centroids "
              f"(root: '{self.root_label}')...")
        centroids = np.vstack([coords[labels == c].mean(axis=0) for c in clusters])
        dist = cdist(centroids, centroids)
        # csgraph reads exact zeros as missing edges
        off_diag = ~np.eye(len(clusters), dtype=bool)
        dist[off_diag & (dist == 0)] = np.finfo(float).eps
        mst = minimum_spanning_tree(sparse.csr_matrix(dist))
        mst = (mst + mst.T).tocsr()

        root = clusters.index(self.root_label)
        order, predecessors = breadth_first_order(mst, root, directed=False,
                                                  return_predecessors=True)
        degree = np.diff(mst.indptr)
        leaves = [node for node in order if node != root and degree[node] == 1]

        lineages = []
        for leaf in leaves:
            path = [leaf]
            while path[-1] != root:
                path.append(predecessors[path[-1]])
            lineages.append([clusters[node] for node in reversed(path)])
        if not lineages:
            lineages = [[self.root_label]]

        for i, lineage in enumerate(lineages):
            print(f"   Lineage{i + 1}: {' -> '.join(map(str, lineage))}")

        self.clusters = clusters
        self.centroids = pd.DataFrame(centroids, index=clusters)
        self.mst = mst
        self.lineages = lineages
        return lineages

    # ──────────────────────────────────────────────────────────────────────────
    # Principal curves
    # ──────────────────────────────────────────────────────────────────────────

    def fit_curves(self, coords, labels):
        """Fits one principal curve per lineage through its member cells."""
        if self.lineages is None:
            raise ValueError("Run fit_lineages first.")
        coords, labels = self._check_inputs(coords, labels)

        print(f"⚙️  Fitting principal curves (approx_points={self.approx_points})...")
        curves = []
        for i, lineage in enumerate(self.lineages):
            members = pd.Series(labels).isin(lineage).to_numpy()
            curve, n_iter = self._fit_principal_curve(coords[members], lineage)
            curves.append(curve)
            print(f"   Lineage{i + 1}: {int(members.sum())} cells, converged after {n_iter} iterations")
        self.curves = curves
        return curves

    def _initial_curve(self, points, lineage):
        if len(lineage) > 1:
            return self.centroids.loc[lineage].to_numpy()
        # Single-cluster lineage: segment along the first principal axis
        center = points.mean(axis=0)
        if len(points) < 2:
            return np.vstack([center, center])
        _, _, vt = np.linalg.svd(points - center, full_matrices=False)
        scores = (points - center) @ vt[0]
        return np.vstack([center + scores.min() * vt[0], center + scores.max() * vt[0]])

    def _fit_principal_curve(self, points, lineage):
        curve = self._initial_curve(points, lineage)
        lam, dist2 = self._project(points, curve)
        prev = dist2.sum()
        n_iter = 0
        for n_iter in range(1, self.max_iter + 1):
            curve = self._smooth(points, lam)
            lam, dist2 = self._project(points, curve)
            total = dist2.sum()
            if prev == 0 or abs(prev - total) / prev < self.tol:
                break
            prev = total
        return curve, n_iter

    def _smooth(self, points, lam):
        """Gaussian-kernel smoother of the coordinates against arc length."""
        lo, hi = lam.min(), lam.max()
        grid = np.linspace(lo, hi, self.approx_points)
        width = self.bandwidth * (hi - lo) if hi > lo else 1.0
        weights = np.exp(-0.5 * ((grid[:, None] - lam[None, :]) / width) ** 2)
        weights /= weights.sum(axis=1, keepdims=True)
        return weights @ points

    def _project(self, points, curve):
        """
        Projects points onto a polyline.

        Returns:
            (arc length of each projection from the curve start,
             squared distance of each point to the curve)
        """
        starts = curve[:-1]
        vecs = curve[1:] - curve[:-1]
        len2 = (vecs ** 2).sum(axis=1)
        seg_len = np.sqrt(len2)
        offsets = np.concatenate([[0.0], np.cumsum(seg_len)[:-1]])
        safe_len2 = np.where(len2 > 0, len2, 1.0)

        lam = np.empty(len(points))
        dist2 = np.empty(len(points))
        for lo in range(0, len(points), self.chunk_size):
            chunk = points[lo:lo + self.chunk_size]
            diff = chunk[:, None, :] - starts[None, :, :]
            t = np.clip((diff * vecs[None, :, :]).sum(axis=2) / safe_len2, 0.0, 1.0)
            resid = diff - t[:, :, None] * vecs[None, :, :]
            d2 = (resid ** 2).sum(axis=2)
            best = np.argmin(d2, axis=1)
            rows = np.arange(len(chunk))
            lam[lo:lo + len(chunk)] = offsets[best] + t[rows, best] * seg_len[best]
            dist2[lo:lo + len(chunk)] = d2[rows, best]
        return lam, dist2

    # ──────────────────────────────────────────────────────────────────────────
    # Projection
    # ──────────────────────────────────────────────────────────────────────────

    def pseudotime(self, coords, labels, index=None):
        """
        Projects every cell onto every lineage curve.

        Cells whose cluster is not on a lineage get NaN for that lineage.

        Returns:
            DataFrame with one ``pseudotime_Lineage{k}`` column per lineage.
        """
        if self.curves is None:
            raise ValueError("Run fit_curves first.")
        coords, labels = self._check_inputs(coords, labels)

        print("⏳ Projecting cells onto lineage curves...")
        result = {}
        for i, (lineage, curve) in enumerate(zip(self.lineages, self.curves)):
            members = pd.Series(labels).isin(lineage).to_numpy()
            values = np.full(len(coords), np.nan)
            if members.any():
                values[members], _ = self._project(coords[members], curve)
            result[f'pseudotime_Lineage{i + 1}'] = values

        self.pseudotime_ = pd.DataFrame(result, index=index)
        return self.pseudotime_

    def fit(self, coords, labels):
        self.fit_lineages(coords, labels)
        self.fit_curves(coords, labels)
        return self

    def fit_transform(self, coords, labels, index=None):
        if index is None and isinstance(coords, pd.DataFrame):
            index = coords.index
        self.fit(coords, labels)
        out = self.pseudotime(coords, labels, index=index)
        print("✅ Trajectory inference complete.")
        return out

    @staticmethod
    def _check_inputs(coords, labels):
        coords = np.asarray(coords, dtype=float)
        labels = np.asarray(pd.Series(labels).astype(object))
        if coords.ndim != 2:
            raise ValueError(f"coords must be 2-D, got shape {coords.shape}")
        if len(coords) != len(labels):
            raise ValueError(f"coords ({len(coords)}) and labels ({len(labels)}) "
                             f"are not the same length.")
        return coords, labels


def summarize_pseudotime(table, label_col, pseudotime_cols=None):
    """
    Reporting view of mean/median pseudotime per lineage and cluster.

    Rows with undefined pseudotime are dropped from the view only; ``table``
    is left untouched.
    """
    if pseudotime_cols is None:
        pseudotime_cols = [c for c in table.columns if c.startswith('pseudotime_')]

    rows = []
    for col in pseudotime_cols:
        defined = table.loc[table[col].notna(), [label_col, col]]
        grouped = defined.groupby(label_col, observed=True)[col]
        summary = grouped.agg(['size', 'mean', 'median']).reset_index().sort_values('mean')
        summary.insert(0, 'lineage', col.replace('pseudotime_', ''))
        rows.append(summary.rename(columns={label_col: 'cluster', 'size': 'n_cells'}))

    if not rows:
        return pd.DataFrame(columns=['lineage', 'cluster', 'n_cells', 'mean', 'median'])
    # lineages stay in column order, so Lineage10 follows Lineage9
    return pd.concat(rows, ignore_index=True)
