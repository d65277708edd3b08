"""JSON utilities: numpy-safe encoding, NaN/Inf sanitization, and atomic writes.

Used for config files, density map metadata and GeoJSON output.
"""

import json
import math
import os
import tempfile
from pathlib import Path

import numpy as np


class NumpyEncoder(json.JSONEncoder):
    """JSON encoder that handles numpy types.

    Usage::

        json.dump(data, f, cls=NumpyEncoder)
    """

    def default(self, obj):
        if isinstance(obj, np.bool_):
            return bool(obj)
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.floating):
            v = float(obj)
            if math.isnan(v) or math.isinf(v):
                return None
            return v
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


def sanitize_for_json(obj):
    """Recursively replace NaN/inf with None in nested structures.

    ``json.dump(default=)`` only fires for non-serializable types, and a
    Python ``float('nan')`` is serializable (as the non-standard ``NaN``
    token), so the structure has to be walked.

    Also converts numpy scalars and arrays to native Python types.
    """
    if isinstance(obj, dict):
        return {k: sanitize_for_json(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [sanitize_for_json(v) for v in obj]
    if isinstance(obj, np.bool_):
        return bool(obj)
    if isinstance(obj, (float, np.floating)):
        v = float(obj)
        return None if (math.isnan(v) or math.isinf(v)) else v
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.ndarray):
        return sanitize_for_json(obj.tolist())
    return obj


def atomic_json_dump(data, filepath, cls=NumpyEncoder, sanitize=True, indent=None):
    """Write JSON atomically: temp file + os.replace().

    The target either holds the complete document or is left untouched.

    Args:
        data: Python object to serialize.
        filepath: Target path (str or Path).
        cls: JSON encoder class (default: NumpyEncoder).
        sanitize: If True, run sanitize_for_json() first.
        indent: Optional indentation passed to json.dump.
    """
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    if sanitize:
        data = sanitize_for_json(data)

    fd, tmp_path = tempfile.mkstemp(dir=filepath.parent, suffix='.tmp')
    try:
        with os.fdopen(fd, 'w') as f:
            json.dump(data, f, cls=cls, indent=indent)
        os.replace(tmp_path, filepath)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
