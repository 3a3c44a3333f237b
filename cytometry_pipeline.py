import argparse
from pathlib import Path

import numpy as np
import pandas as pd
import anndata as ad
import scanpy as sc

from clustering import assign_graph_clusters, assign_som_clusters
from embedding import compute_diffusion_map, compute_umap
from flow_loader import arcsinh_transform, load_cluster_files, marker_columns
from label_merge import DEFAULT_MERGE_RULES, LabelMerger
from trajectory_inference import SlingshotTrajectory, summarize_pseudotime


# ──────────────────────────────────────────────────────────────────────────────
# Table assembly
# ──────────────────────────────────────────────────────────────────────────────

def append_columns(table, new):
    """
    Row-aligned column append. ``new`` must have the same rows, in the same
    order, as ``table``; existing columns are never overwritten.
    """
    if len(new) != len(table):
        raise ValueError(f"Cannot append {len(new)} rows to a table of {len(table)} rows.")
    if not new.index.equals(table.index):
        raise ValueError("Row order mismatch: stage output is not aligned with the table.")
    clash = [c for c in new.columns if c in table.columns]
    if clash:
        raise ValueError(f"Columns already present in the table: {clash}")
    return pd.concat([table, new], axis=1)


def assemble_table(base, *parts):
    table = base
    for part in parts:
        table = append_columns(table, part)
    return table


# ──────────────────────────────────────────────────────────────────────────────
# Pipeline
# ──────────────────────────────────────────────────────────────────────────────

class CytometryTrajectory:
    def __init__(self, input_dir, markers=None, pattern='*.fcs', decode_path=None,
                 sample_column='SampleID', label_regex=None):
        """
        Clustering, embedding and pseudotime analysis of pre-clustered
        flow-cytometry exports.

        Every stage appends columns to ``self.table``; rows are never dropped
        or reordered.

        Args:
            input_dir: Directory with one event file per cluster.
            markers: Default marker subset for every stage. If ``None``, all
                     numeric channels except bookkeeping columns are used.
            pattern: Glob selecting event files.
            decode_path: Optional ``code: name`` sample decode file.
            sample_column: Channel holding the internal sample code.
            label_regex: Regex extracting the cluster label from file names.
        """
        self.input_dir = input_dir
        self.markers = markers
        self.pattern = pattern
        self.decode_path = decode_path
        self.sample_column = sample_column
        self.label_regex = label_regex
        self.table = None
        self.trajectory = None
        self.embedding_columns = {}

    def _require_table(self):
        if self.table is None:
            raise ValueError("Run load first.")

    def _markers(self, markers):
        return list(markers) if markers is not None else list(self.markers)

    def _append(self, new):
        self.table = append_columns(self.table, new)

    def load(self, cofactor=None):
        """Loads event files; optionally arcsinh-transforms the marker channels."""
        table = load_cluster_files(self.input_dir, pattern=self.pattern,
                                   decode_path=self.decode_path,
                                   sample_column=self.sample_column,
                                   label_regex=self.label_regex)
        if self.markers is None:
            self.markers = marker_columns(
                table, exclude=('Time', self.sample_column, 'source_cluster', 'sample_id'))
            print(f"   Using all {len(self.markers)} numeric channels as markers.")
        if cofactor is not None:
            print(f"⚙️  Applying arcsinh transform (cofactor={cofactor})...")
            table = arcsinh_transform(table, self.markers, cofactor)
        self.table = table
        return self.table

    def run_som_clustering(self, markers=None, n_clusters=14, xdim=10, ydim=10,
                           seed=42, label_prefix='CD4'):
        self._require_table()
        self._append(assign_som_clusters(self.table, self._markers(markers),
                                         n_clusters=n_clusters, xdim=xdim, ydim=ydim,
                                         seed=seed, label_prefix=label_prefix))
        return self.table

    def run_graph_clustering(self, markers=None, n_neighbors=30, resolution=1.0, seed=0):
        self._require_table()
        self._append(assign_graph_clusters(self.table, self._markers(markers),
                                           n_neighbors=n_neighbors,
                                           resolution=resolution, seed=seed))
        return self.table

    def run_diffusion_map(self, markers=None, n_neighbors=30, n_comps=3):
        self._require_table()
        dcs = compute_diffusion_map(self.table, self._markers(markers),
                                    n_neighbors=n_neighbors, n_comps=n_comps)
        self._append(dcs)
        self.embedding_columns['diffmap'] = list(dcs.columns)
        return self.table

    def run_umap(self, markers=None, n_neighbors=15, min_dist=0.5, seed=42):
        self._require_table()
        umap = compute_umap(self.table, self._markers(markers),
                            n_neighbors=n_neighbors, min_dist=min_dist, seed=seed)
        self._append(umap)
        self.embedding_columns['umap'] = list(umap.columns)
        return self.table

    def merge_labels(self, source_col='som_cluster', rules=DEFAULT_MERGE_RULES,
                     key_added='merged_cluster'):
        """Rewrites fine labels into the merged biological vocabulary."""
        self._require_table()
        merger = LabelMerger(rules)
        print(f"🔀 Merging '{source_col}' labels into '{key_added}'...")
        merged = merger.merge_labels(self.table[source_col])
        for fine, coarse in sorted(merger.mapping(self.table[source_col]).items(), key=str):
            print(f"   {fine} -> {coarse}")
        self._append(pd.DataFrame({key_added: merged}, index=self.table.index))
        return self.table

    def run_trajectory(self, root_label='Naive', label_col='merged_cluster',
                       embedding='diffmap', approx_points=150, **kwargs):
        """
        Infers lineages and per-lineage pseudotime.

        If the root label is absent the error propagates and no pseudotime
        column is added.

        Args:
            root_label: Starting cluster of every lineage.
            label_col: Cluster column (merged labels by default).
            embedding: ``'diffmap'``, ``'umap'`` or an explicit list of
                       coordinate columns.
            approx_points: Points per principal curve.
            **kwargs: Forwarded to ``SlingshotTrajectory``.
        """
        self._require_table()
        if isinstance(embedding, str):
            if embedding not in self.embedding_columns:
                raise ValueError(f"Embedding '{embedding}' not computed. "
                                 f"Available: {list(self.embedding_columns)}")
            coord_cols = self.embedding_columns[embedding]
        else:
            coord_cols = list(embedding)

        print(f"🚀 Starting Trajectory Inference on {coord_cols} "
              f"grouped by '{label_col}'...")
        inferrer = SlingshotTrajectory(root_label, approx_points=approx_points, **kwargs)
        pseudotime = inferrer.fit_transform(self.table[coord_cols],
                                            self.table[label_col],
                                            index=self.table.index)
        self._append(pseudotime)
        self.trajectory = inferrer
        return self.table

    def summarize(self, label_col='merged_cluster'):
        """Prints and returns mean pseudotime per lineage and cluster."""
        self._require_table()
        print("🔧 Pseudotime by lineage and cluster:")
        summary = summarize_pseudotime(self.table, label_col)
        print(summary.to_string(index=False))
        return summary

    def to_anndata(self):
        """AnnData copy of the table: markers in ``X``, everything else in ``obs``."""
        self._require_table()
        obs = self.table.drop(columns=self.markers).copy()
        obs.index = obs.index.astype(str)
        for col in obs.columns:
            if obs[col].dtype == object:
                obs[col] = obs[col].astype('category')
        adata = ad.AnnData(X=self.table[self.markers].to_numpy(dtype=np.float32), obs=obs)
        adata.var_names = [str(m) for m in self.markers]
        if 'diffmap' in self.embedding_columns:
            adata.obsm['X_diffmap'] = self.table[self.embedding_columns['diffmap']].to_numpy()
        if 'umap' in self.embedding_columns:
            adata.obsm['X_umap'] = self.table[self.embedding_columns['umap']].to_numpy()
        return adata

    def save_results(self, output_path, h5ad_path=None):
        """Writes the full table (with a leading row-index column) and optionally an h5ad copy."""
        self._require_table()
        print(f"💾 Saving {self.table.shape[0]} cells x {self.table.shape[1]} columns "
              f"to {output_path}...")
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        self.table.to_csv(output_path, index=True)
        if h5ad_path:
            print(f"💾 Saving AnnData copy to {h5ad_path}...")
            self.to_anndata().write(h5ad_path)


# ══════════════════════════════════════════════════════════════════════════════
# Command line
# ══════════════════════════════════════════════════════════════════════════════

def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Re-cluster pre-clustered flow-cytometry exports, embed them, "
                    "infer pseudotime and write one combined CSV.")

    # Input / output
    parser.add_argument("--input-dir", required=True,
                        help="Directory with one event file per cluster.")
    parser.add_argument("--pattern", default="*.fcs",
                        help="Glob selecting event files (default: *.fcs).")
    parser.add_argument("--decode-file", default=None,
                        help="Optional 'code: name' file decoding the sample channel.")
    parser.add_argument("--sample-column", default="SampleID",
                        help="Channel holding the internal sample code (default: SampleID).")
    parser.add_argument("--label-regex", default=None,
                        help="Regex extracting the cluster label from file names "
                             "(first group wins; default: file stem).")
    parser.add_argument("--output", required=True,
                        help="Output CSV path.")
    parser.add_argument("--h5ad-output", default=None,
                        help="Also write the table as an .h5ad file.")

    # Markers
    parser.add_argument("--markers", nargs="+", default=None,
                        help="Marker subset used by every stage "
                             "(default: all numeric channels).")
    parser.add_argument("--som-markers", nargs="+", default=None)
    parser.add_argument("--graph-markers", nargs="+", default=None)
    parser.add_argument("--diffmap-markers", nargs="+", default=None)
    parser.add_argument("--umap-markers", nargs="+", default=None)
    parser.add_argument("--cofactor", type=float, default=None,
                        help="Apply arcsinh(x / cofactor) to markers after loading.")

    # SOM
    parser.add_argument("--n-metaclusters", type=int, default=14,
                        help="Number of SOM metaclusters (default: 14).")
    parser.add_argument("--som-xdim", type=int, default=10)
    parser.add_argument("--som-ydim", type=int, default=10)
    parser.add_argument("--seed", type=int, default=42,
                        help="Random seed for SOM and UMAP (default: 42).")
    parser.add_argument("--label-prefix", default="CD4",
                        help="Prefix of SOM metacluster labels (default: CD4).")

    # Graph clustering / embeddings
    parser.add_argument("--graph-k", type=int, default=30,
                        help="k for the community-detection graph (default: 30).")
    parser.add_argument("--leiden-resolution", type=float, default=1.0)
    parser.add_argument("--diffmap-k", type=int, default=30,
                        help="k for the diffusion kernel (default: 30).")
    parser.add_argument("--n-dcs", type=int, default=3,
                        help="Diffusion components to keep, >= 3 (default: 3).")
    parser.add_argument("--umap-neighbors", type=int, default=15)
    parser.add_argument("--umap-min-dist", type=float, default=0.5)

    # Trajectory
    parser.add_argument("--root-label", default="Naive",
                        help="Merged cluster every lineage starts from (default: Naive).")
    parser.add_argument("--trajectory-embedding", choices=["diffmap", "umap"],
                        default="diffmap")
    parser.add_argument("--approx-points", type=int, default=150,
                        help="Points per principal curve (default: 150).")
    parser.add_argument("--skip-trajectory", action="store_true",
                        help="Write clusters and embeddings without pseudotime.")

    parser.add_argument("--verbosity", type=int, default=1,
                        help="scanpy verbosity level (default: 1).")

    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    sc.settings.verbosity = args.verbosity

    analyzer = CytometryTrajectory(
        input_dir=args.input_dir,
        markers=args.markers,
        pattern=args.pattern,
        decode_path=args.decode_file,
        sample_column=args.sample_column,
        label_regex=args.label_regex,
    )

    try:
        # 1. Load
        analyzer.load(cofactor=args.cofactor)

        # 2. Cluster
        analyzer.run_som_clustering(markers=args.som_markers,
                                    n_clusters=args.n_metaclusters,
                                    xdim=args.som_xdim, ydim=args.som_ydim,
                                    seed=args.seed, label_prefix=args.label_prefix)
        analyzer.run_graph_clustering(markers=args.graph_markers,
                                      n_neighbors=args.graph_k,
                                      resolution=args.leiden_resolution)

        # 3. Embed
        analyzer.run_diffusion_map(markers=args.diffmap_markers,
                                   n_neighbors=args.diffmap_k, n_comps=args.n_dcs)
        analyzer.run_umap(markers=args.umap_markers, n_neighbors=args.umap_neighbors,
                          min_dist=args.umap_min_dist, seed=args.seed)

        # 4. Merge & infer
        analyzer.merge_labels()
        if not args.skip_trajectory:
            analyzer.run_trajectory(root_label=args.root_label,
                                    embedding=args.trajectory_embedding,
                                    approx_points=args.approx_points)
            analyzer.summarize()
    except (FileNotFoundError, KeyError, ValueError) as err:
        raise SystemExit(f"❌ {err}")

    # 5. Save
    analyzer.save_results(args.output, h5ad_path=args.h5ad_output)


if __name__ == "__main__":
    main()
