"""Functions to provide I/O APIs for comparison reports.

Authors: Ayush Baid, John Lambert
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Union

import simplejson as json


def save_json_file(
    json_fpath: Union[str, Path],
    data: Union[Dict[Any, Any], List[Any]],
) -> None:
    """Save a Python dictionary or list to a JSON file.

    Args:
        json_fpath: Path to file to create.
        data: Python dictionary or list to be serialized.
    """
    dirname = os.path.dirname(json_fpath)
    if dirname:
        os.makedirs(dirname, exist_ok=True)
    with open(json_fpath, "w") as f:
        # ignore_nan replaces any NaN with null.
        json.dump(data, f, indent=4, ignore_nan=True)


def read_json_file(fpath: Union[str, Path]) -> Any:
    """Load dictionary from JSON file.

    Args:
        fpath: Path to JSON file.

    Returns:
        Deserialized Python dictionary or list.
    """
    with open(fpath, "r") as f:
        return json.load(f)
