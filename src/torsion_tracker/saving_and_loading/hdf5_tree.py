"""
Object trees <-> HDF5.

A tree is built from registered dataclasses and Enums, dicts with string keys,
lists, tuples, numpy arrays, scalars and None. Layout in the file:

- containers (dict, dataclass, list, tuple, None) are groups tagged with a
  '__kind__' attribute; dataclass groups also carry '__type__' (the class name)
- scalars and enum members are attributes of their parent group; enum members
  are stored as '__enum__:ClassName.MEMBER'
- arrays are datasets, gzip-compressed once they are large enough to benefit
- list and tuple items are keyed '0', '1', ...
- the root group is a dict tagged with '__version__'

Keys beginning with '__' are reserved for the tags above.
"""
from __future__ import annotations
from dataclasses import fields, is_dataclass
from enum import Enum
from typing import Any

import h5py
import numpy as np

FORMAT_VERSION = "2.0"

_KIND = "__kind__"
_TYPE = "__type__"
_VERSION = "__version__"
_ENUM_PREFIX = "__enum__:"

_COMPRESS_MIN_SIZE = 256

registered_types: dict[str, type] = {}


def register_type(cls):
    """Make a dataclass or Enum rebuildable by read_hdf5. Usable as a decorator."""
    registered_types[cls.__name__] = cls
    return cls


# ----------------------------------------------------------------------------- writing

def write_hdf5(filepath, tree: dict) -> None:
    """Write a dict tree to a new HDF5 file (overwrites)."""
    if not isinstance(tree, dict):
        raise TypeError(f"the root of an HDF5 tree must be a dict, got {type(tree).__name__}")
    with h5py.File(filepath, "w") as f:
        f.attrs[_VERSION] = FORMAT_VERSION
        _write_members(f, "dict", _dict_items(tree))


def _dict_items(d: dict):
    for k, v in d.items():
        if not isinstance(k, str):
            raise TypeError(f"HDF5 keys must be strings. Got {type(k).__name__}: {k!r}")
        yield k, v


def _write_members(group: h5py.Group, kind: str, items) -> None:
    group.attrs[_KIND] = kind
    for key, value in items:
        if key.startswith("__"):
            raise ValueError(f"key {key!r} is reserved")
        _write_node(group, key, value)


def _write_node(parent: h5py.Group, key: str, value: Any) -> None:
    if value is None:
        parent.create_group(key).attrs[_KIND] = "none"
    elif isinstance(value, Enum):
        parent.attrs[key] = f"{_ENUM_PREFIX}{type(value).__name__}.{value.name}"
    elif isinstance(value, (bool, int, float, str)):
        parent.attrs[key] = value
    elif isinstance(value, np.generic):
        parent.attrs[key] = value.item()
    elif isinstance(value, np.ndarray):
        if value.dtype == object:
            raise TypeError(f"{key}: object arrays cannot be stored")
        compression = "gzip" if value.size >= _COMPRESS_MIN_SIZE else None
        parent.create_dataset(key, data=value, compression=compression)
    elif is_dataclass(value) and not isinstance(value, type):
        group = parent.create_group(key)
        group.attrs[_TYPE] = type(value).__name__
        _write_members(group, "dataclass", ((f.name, getattr(value, f.name)) for f in fields(value)))
    elif isinstance(value, dict):
        _write_members(parent.create_group(key), "dict", _dict_items(value))
    elif isinstance(value, (list, tuple)):
        kind = "tuple" if isinstance(value, tuple) else "list"
        _write_members(parent.create_group(key), kind, ((str(i), v) for i, v in enumerate(value)))
    else:
        raise TypeError(f"{key}: cannot store {type(value).__name__} ({value!r})")


# ----------------------------------------------------------------------------- reading

def read_hdf5(filepath, types: dict[str, type] | None = None) -> dict:
    """Read a file written by write_hdf5 back into a tree of objects."""
    types = registered_types if types is None else types
    with h5py.File(filepath, "r") as f:
        version = _native(f.attrs.get(_VERSION, ""))
        if version != FORMAT_VERSION:
            raise ValueError(f"Unsupported HDF5 tree format version: {version!r}")
        return _read_group(f, types)


def _read_group(group: h5py.Group, types: dict[str, type]) -> Any:
    kind = _native(group.attrs.get(_KIND, "dict"))
    if kind == "none":
        return None

    members = {}
    for key, value in group.attrs.items():
        if not key.startswith("__"):
            members[key] = _decode_scalar(_native(value), types)
    for key, node in group.items():
        members[key] = node[()] if isinstance(node, h5py.Dataset) else _read_group(node, types)

    if kind in ("list", "tuple"):
        items = [members[k] for k in sorted(members, key=int)]
        return tuple(items) if kind == "tuple" else items
    if kind == "dataclass":
        cls = _lookup(_native(group.attrs[_TYPE]), types)
        return cls(**{f.name: members[f.name] for f in fields(cls) if f.name in members})
    return members


def _decode_scalar(value: Any, types: dict[str, type]) -> Any:
    if isinstance(value, str) and value.startswith(_ENUM_PREFIX):
        cls_name, _, member = value[len(_ENUM_PREFIX):].partition(".")
        return _lookup(cls_name, types)[member]
    return value


def _lookup(name: str, types: dict[str, type]) -> type:
    try:
        return types[name]
    except KeyError:
        raise ValueError(f"Unknown type '{name}'; register it with register_type()") from None


def _native(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    if isinstance(value, np.generic):
        return value.item()
    return value
