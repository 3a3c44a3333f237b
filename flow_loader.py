import re
from pathlib import Path

import numpy as np
import pandas as pd
import fcsparser

# Bookkeeping columns that are never treated as marker channels
NON_MARKER_COLUMNS = ('Time', 'SampleID', 'source_cluster', 'sample_id')


def read_event_file(path):
    """Reads one exported event file (FCS or CSV) into a DataFrame."""
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix == '.fcs':
        _, data = fcsparser.parse(str(path), reformat_meta=True)
        return pd.DataFrame(data)
    if suffix == '.csv':
        return pd.read_csv(path)
    raise ValueError(f"Unsupported event file type '{path.suffix}' ({path.name}).")


def label_from_filename(path, label_regex=None):
    """
    Derives the source-cluster label of an event file from its name.

    Args:
        path: Event file path.
        label_regex: Optional regular expression searched in the file stem.
                     The first capture group (or the whole match if the
                     pattern has no group) becomes the label. Names that do
                     not match fall back to the bare stem.
    """
    stem = Path(path).stem
    if label_regex is None:
        return stem
    match = re.search(label_regex, stem)
    if match is None:
        return stem
    return match.group(1) if match.groups() else match.group(0)


def read_decode_file(path):
    """
    Parses a sample decode file into ``{code: original_name}``.

    Each non-blank line holds one ``code: name`` pair, e.g. ``3: donor_07.fcs``.
    """
    mapping = {}
    with open(path, 'r') as fin:
        for lineno, line in enumerate(fin, start=1):
            line = line.strip()
            if not line:
                continue
            if ':' not in line:
                raise ValueError(f"{path}:{lineno}: expected 'code: name', got '{line}'")
            code, name = line.split(':', 1)
            try:
                code = int(float(code.strip()))
            except ValueError:
                raise ValueError(f"{path}:{lineno}: sample code '{code.strip()}' is not numeric") from None
            mapping[code] = name.strip()
    return mapping


def decode_samples(codes, mapping):
    """Maps internal numeric sample codes to names; unknown codes become missing."""
    codes = pd.Series(codes)
    as_int = pd.to_numeric(codes, errors='coerce').round().astype('Int64')
    decoded = as_int.map(mapping).astype(object)
    decoded = decoded.where(decoded.notna(), None)
    n_missing = int(decoded.isna().sum())
    if n_missing:
        unknown = sorted(set(as_int[decoded.isna()].dropna().tolist()))
        print(f"   ⚠️  {n_missing} events have no decode entry (codes: {unknown}); "
              f"sample_id left undefined.")
    return decoded


def load_cluster_files(input_dir, pattern='*.fcs', decode_path=None,
                       sample_column='SampleID', label_regex=None):
    """
    Loads a directory of per-cluster event files into one flat table.

    Every row is tagged with ``source_cluster`` derived from its file name.
    If ``decode_path`` is given, ``sample_id`` is added by decoding the
    ``sample_column`` channel against the decode file.

    Args:
        input_dir: Directory holding one event file per cluster.
        pattern: Glob used to select event files.
        decode_path: Optional ``code: name`` decode file.
        sample_column: Channel carrying the internal numeric sample code.
        label_regex: Passed to ``label_from_filename``.

    Raises:
        FileNotFoundError: The directory is missing or no file matches.
        ValueError: A decode file is given but ``sample_column`` is absent.
                    Also raised when the files disagree on their channels or
                    already carry a ``source_cluster`` column.
    """
    input_dir = Path(input_dir)
    if not input_dir.is_dir():
        raise FileNotFoundError(f"Input directory '{input_dir}' does not exist.")

    files = sorted(input_dir.glob(pattern))
    if not files:
        raise FileNotFoundError(f"No files matching '{pattern}' in '{input_dir}'.")

    print(f"📂 Loading {len(files)} event files from {input_dir}...")
    frames = []
    schema = None
    for path in files:
        df = read_event_file(path)
        if 'source_cluster' in df.columns:
            raise ValueError(f"{path.name} already has a 'source_cluster' column.")
        if schema is None:
            schema = list(df.columns)
        elif list(df.columns) != schema:
            raise ValueError(f"{path.name} has channels {list(df.columns)}, "
                             f"expected {schema} (from {files[0].name}).")
        df['source_cluster'] = label_from_filename(path, label_regex)
        print(f"   {path.name}: {len(df)} events")
        frames.append(df)

    table = pd.concat(frames, axis=0, ignore_index=True)

    if decode_path is not None:
        if sample_column not in table.columns:
            raise ValueError(f"Decode file given but channel '{sample_column}' not found. "
                             f"Available: {list(table.columns)}")
        print(f"📑 Decoding '{sample_column}' with {decode_path}...")
        mapping = read_decode_file(decode_path)
        table['sample_id'] = decode_samples(table[sample_column], mapping).values

    print(f"✅ Loaded table: {table.shape[0]} events x {table.shape[1]} columns")
    return table


def marker_columns(table, exclude=NON_MARKER_COLUMNS):
    """Numeric channel columns of ``table``, minus bookkeeping columns."""
    numeric = table.select_dtypes(include=[np.number]).columns
    return [col for col in numeric if col not in exclude]


def arcsinh_transform(table, columns, cofactor=150.0):
    """Returns a copy of ``table`` with ``arcsinh(x / cofactor)`` applied to ``columns``."""
    if cofactor <= 0:
        raise ValueError(f"cofactor must be positive, got {cofactor}")
    out = table.copy()
    out[list(columns)] = np.arcsinh(out[list(columns)].astype(float) / cofactor)
    return out
