"""gridxform: affine resampling of sparse volumetric grids.

.. include:: ../README.md
"""

from __future__ import annotations

__docformat__ = 'google'
__version__ = '0.1.0'
__version_info__ = tuple(int(num) for num in __version__.split('.'))

from collections.abc import Iterator
import abc
import concurrent.futures
import dataclasses
import itertools
import typing
from typing import Any, Union
import warnings

import numpy as np
import numpy.typing as npt
import scipy.spatial.transform

if typing.TYPE_CHECKING:
  _DType = np.dtype[Any]
  _NDArray = npt.NDArray[Any]
  _DTypeLike = npt.DTypeLike
  _ArrayLike = npt.ArrayLike
else:
  _DType = Any
  _NDArray = Any
  _DTypeLike = Any  # Else `pdoc` uses a long type expression for documentation.
  _ArrayLike = Any  # Same.


def _check_eq(a: Any, b: Any) -> None:
  """If the two values or arrays are not equal, raise an exception with a useful message."""
  are_equal = np.all(a == b) if isinstance(a, np.ndarray) else a == b
  if not are_equal:
    raise AssertionError(f'{a!r} == {b!r}')


def _as_vec3(value: _ArrayLike, name: str) -> _NDArray:
  """Return a float64 3-vector, broadcasting a scalar onto all three axes."""
  array = np.asarray(value, np.float64)
  if array.ndim > 1 or array.size not in (1, 3):
    raise ValueError(f'The {name} {value!r} is not a scalar or a 3-vector.')
  return np.broadcast_to(array, (3,)).copy()


def _as_coord(value: _ArrayLike) -> tuple[int, int, int]:
  """Return an integer 3-tuple."""
  array = np.asarray(value)
  if array.shape != (3,):
    raise ValueError(f'Coordinate {value!r} does not have 3 components.')
  if not np.issubdtype(array.dtype, np.integer) and np.any(array != np.floor(array)):
    raise ValueError(f'Coordinate {value!r} is not integral.')
  x, y, z = (int(v) for v in array)
  return x, y, z


def _from_float(array: _NDArray, dtype: _DTypeLike) -> _NDArray:
  """Convert blended (floating or complex) values back to `dtype`, rounding integers."""
  dtype = np.dtype(dtype)
  if np.issubdtype(dtype, np.integer):
    info = np.iinfo(dtype)
    return np.clip(np.rint(array.real), info.min, info.max).astype(dtype)
  return array.astype(dtype, copy=False)


def _is_discrete(dtype: _DTypeLike) -> bool:
  """Return True for value types that cannot be blended (i.e. bool)."""
  return np.dtype(dtype) == np.bool_


# Sparse storage layout: blocks of 8x8x8 voxels keyed by their origin.  Block indices are packed
# into a single int64 (21 bits per axis) for vectorized lookup.
_LOG2DIM = 3
_DIM = 1 << _LOG2DIM
_MASK = _DIM - 1
_KEY_BITS = 21
_KEY_OFFSET = 1 << (_KEY_BITS - 1)

COORD_LIMIT = _KEY_OFFSET * _DIM
"""Voxel coordinates must lie in the half-open range [-COORD_LIMIT, COORD_LIMIT) on each axis."""


def _in_range(coords: _NDArray) -> _NDArray:
  return np.all((coords >= -COORD_LIMIT) & (coords < COORD_LIMIT), axis=-1)


def _block_keys(coords: _NDArray) -> _NDArray:
  """Return the packed block key of each (in-range) voxel coordinate in the `(N, 3)` array."""
  index = (coords >> _LOG2DIM) + _KEY_OFFSET
  return (index[:, 0] << (2 * _KEY_BITS)) | (index[:, 1] << _KEY_BITS) | index[:, 2]


def _group_by_block(coords: _NDArray) -> Iterator[tuple[tuple[int, int, int], _NDArray]]:
  """Yield `(block_origin, indices)` for the voxel coordinates grouped by containing block."""
  if len(coords) == 0:
    return
  keys = _block_keys(coords)
  unique_keys, inverse = np.unique(keys, return_inverse=True)
  inverse = inverse.reshape(-1)
  order = np.argsort(inverse, kind='stable')
  splits = np.cumsum(np.bincount(inverse, minlength=len(unique_keys)))[:-1]
  for group in np.split(order, splits):
    yield _as_coord(coords[group[0]] & ~_MASK), group


@dataclasses.dataclass(frozen=True)
class CoordBBox:
  """Axis-aligned box of integer voxel coordinates, with inclusive `min` and `max` corners.

  The box is empty if `min[i] > max[i]` on any axis.
  """

  min: tuple[int, int, int]
  """Inclusive lower corner."""

  max: tuple[int, int, int]
  """Inclusive upper corner."""

  def __post_init__(self) -> None:
    object.__setattr__(self, 'min', _as_coord(self.min))
    object.__setattr__(self, 'max', _as_coord(self.max))

  @classmethod
  def empty(cls) -> CoordBBox:
    """Return the canonical empty box."""
    return cls((0, 0, 0), (-1, -1, -1))

  @classmethod
  def from_points(cls, points: _ArrayLike) -> CoordBBox:
    """Return the smallest box enclosing the integer `(N, 3)` points."""
    points = np.asarray(points).reshape(-1, 3)
    if len(points) == 0:
      return cls.empty()
    return cls(points.min(axis=0), points.max(axis=0))

  @property
  def is_empty(self) -> bool:
    return any(lo > hi for lo, hi in zip(self.min, self.max))

  @property
  def dim(self) -> tuple[int, int, int]:
    """Number of voxels along each axis."""
    if self.is_empty:
      return 0, 0, 0
    x, y, z = (hi - lo + 1 for lo, hi in zip(self.min, self.max))
    return x, y, z

  @property
  def volume(self) -> int:
    x, y, z = self.dim
    return x * y * z

  def contains(self, xyz: _ArrayLike) -> bool:
    coord = _as_coord(xyz)
    return all(lo <= c <= hi for c, lo, hi in zip(coord, self.min, self.max))

  def intersect(self, other: CoordBBox) -> CoordBBox:
    box = CoordBBox(np.maximum(self.min, other.min), np.minimum(self.max, other.max))
    return CoordBBox.empty() if box.is_empty else box

  def expand(self, other: CoordBBox | _ArrayLike) -> CoordBBox:
    """Return the smallest box enclosing both this box and a coordinate or another box."""
    if not isinstance(other, CoordBBox):
      coord = _as_coord(other)
      other = CoordBBox(coord, coord)
    if other.is_empty:
      return self
    if self.is_empty:
      return other
    return CoordBBox(np.minimum(self.min, other.min), np.maximum(self.max, other.max))

  def dilate(self, amount: int) -> CoordBBox:
    if self.is_empty:
      return self
    return CoordBBox(np.subtract(self.min, amount), np.add(self.max, amount))

  def corners(self) -> _NDArray:
    """Return the 8 corners as an `(8, 3)` integer array, with bit i of the row index
    selecting `max` on axis i."""
    lo, hi = np.array(self.min), np.array(self.max)
    return np.array([np.where([j & 1, j & 2, j & 4], hi, lo) for j in range(8)])

  def coords(self) -> _NDArray:
    """Return all voxel coordinates in the box as an `(N, 3)` int64 array, z varying fastest."""
    if self.is_empty:
      return np.empty((0, 3), np.int64)
    axes = [np.arange(lo, hi + 1, dtype=np.int64) for lo, hi in zip(self.min, self.max)]
    return np.stack(np.meshgrid(*axes, indexing='ij'), axis=-1).reshape(-1, 3)


# Affine matrices are 4x4 and act on homogeneous row vectors:  (x', y', z', 1) = (x, y, z, 1) @ M.
# The linear block is M[:3, :3] and the translation is the last row M[3, :3].


def _translation_matrix(vector: _ArrayLike) -> _NDArray:
  matrix = np.eye(4)
  matrix[3, :3] = vector
  return matrix


def _scale_matrix(scale: _ArrayLike) -> _NDArray:
  return np.diag(tuple(np.broadcast_to(scale, 3)) + (1.0,))


def _rotation_matrix(angles: _ArrayLike, order: str = 'xyz') -> _NDArray:
  """Return the matrix rotating by `angles[i]` radians about axis i, in the axis `order`."""
  angles = _as_vec3(angles, 'rotation')
  matrix = np.eye(4)
  if np.any(angles != 0.0):
    per_axis = [angles['xyz'.index(axis)] for axis in order]
    rotation = scipy.spatial.transform.Rotation.from_euler(order, per_axis)
    matrix[:3, :3] = rotation.as_matrix().T  # Transposed for row vectors.
  return matrix


def _axis_rotation_matrix(angle: float, axis: str) -> _NDArray:
  if axis not in ('x', 'y', 'z'):
    raise ValueError(f'Rotation axis {axis!r} is not one of x, y, z.')
  angles = np.zeros(3)
  angles['xyz'.index(axis)] = angle
  return _rotation_matrix(angles)


def _apply_affine(matrix: _NDArray, points: _ArrayLike) -> _NDArray:
  """Map the points (in the last dimension of `points`) through the affine `matrix`."""
  points = np.asarray(points, np.float64)
  return points @ matrix[:3, :3] + matrix[3, :3]


def _invert_affine(matrix: _NDArray) -> _NDArray:
  """Return the inverse of an affine matrix, without mixing the translation into the solve."""
  try:
    linear_inverse = np.linalg.inv(matrix[:3, :3])
  except np.linalg.LinAlgError as e:
    raise ValueError(f'Affine matrix {matrix.tolist()} is singular.') from e
  inverse = np.eye(4)
  inverse[:3, :3] = linear_inverse
  inverse[3, :3] = -matrix[3, :3] @ linear_inverse
  return inverse


def is_affine(matrix: _ArrayLike, tol: float = 1e-10) -> bool:
  """Return True if the 4x4 `matrix` has no perspective component, i.e. its last column is
  (0, 0, 0, 1)."""
  matrix = np.asarray(matrix, np.float64)
  _check_eq(matrix.shape, (4, 4))
  return bool(np.allclose(matrix[:, 3], [0.0, 0.0, 0.0, 1.0], rtol=0.0, atol=tol))


def is_diagonal(matrix: _ArrayLike, tol: float = 1e-10) -> bool:
  """Return True if the linear block of the affine `matrix` has no off-diagonal terms, so that
  it maps axis-aligned boxes onto axis-aligned boxes."""
  linear = np.asarray(matrix, np.float64)[:3, :3]
  return bool(np.allclose(linear - np.diag(np.diag(linear)), 0.0, rtol=0.0, atol=tol))


def _as_affine_matrix(matrix: _ArrayLike) -> _NDArray:
  matrix = np.array(matrix, np.float64)
  if matrix.shape != (4, 4):
    raise ValueError(f'Matrix shape {matrix.shape} is not (4, 4).')
  if not np.all(np.isfinite(matrix)):
    raise ValueError(f'Matrix {matrix.tolist()} has non-finite entries.')
  if not is_affine(matrix):
    raise ValueError(f'Matrix {matrix.tolist()} has a perspective component.')
  return matrix


def affine_matrix(pivot: _ArrayLike = 0.0,
                  scale: _ArrayLike = 1.0,
                  rotate: _ArrayLike = 0.0,
                  translate: _ArrayLike = 0.0,
                  *,
                  xform_order: str = 'srt',
                  rot_order: str = 'xyz') -> tuple[_NDArray, _NDArray]:
  """Return the 4x4 index-to-index affine matrix and its inverse.

  With the default orders, the matrix is
  `T(-pivot) @ S(scale) @ Rx(rotate[0]) @ Ry(rotate[1]) @ Rz(rotate[2]) @ T(pivot) @ T(translate)`
  acting on row vectors, i.e. scaling and then rotation (about X, then Y, then Z) happen about
  the pivot, and the translation is applied last.

  Args:
    pivot: Center of scaling and rotation.
    scale: Per-axis scale factors (a scalar applies to all axes); each must be finite and nonzero.
    rotate: Rotation angles in radians about the X, Y, and Z axes.
    translate: Translation applied after scaling and rotation.
    xform_order: Permutation of `'srt'` giving the order in which scale, rotation, and
      translation are applied.
    rot_order: Permutation of `'xyz'` giving the order in which the per-axis rotations are applied.

  Returns:
    A tuple `(matrix, inverse)` of 4x4 float64 arrays.
  """
  pivot = _as_vec3(pivot, 'pivot')
  scale = _as_vec3(scale, 'scale')
  rotate = _as_vec3(rotate, 'rotation')
  translate = _as_vec3(translate, 'translation')
  if not np.all(np.isfinite(scale)) or np.any(scale == 0.0):
    raise ValueError(f'Scale {tuple(scale)} must be finite and nonzero.')
  if sorted(xform_order) != ['r', 's', 't']:
    raise ValueError(f'Transform order {xform_order!r} is not a permutation of "srt".')
  if sorted(rot_order) != ['x', 'y', 'z']:
    raise ValueError(f'Rotation order {rot_order!r} is not a permutation of "xyz".')
  steps = {
      's': _scale_matrix(scale),
      'r': _rotation_matrix(rotate, rot_order),
      't': _translation_matrix(translate),
  }
  matrix = _translation_matrix(-pivot)
  for step in xform_order:
    matrix = matrix @ steps[step]
  matrix = matrix @ _translation_matrix(pivot)
  return matrix, _invert_affine(matrix)


_ANGLE_EPSILON = 1e-12  # Extracted angles below this magnitude are flushed to zero.


def decompose(matrix: _ArrayLike, *, atol: float = 1e-6
              ) -> tuple[bool, _NDArray | None, _NDArray | None, _NDArray | None]:
  """Decompose an affine matrix into scale, rotation (XYZ Euler angles), and translation.

  The decomposition is the inverse of `affine_matrix` with zero pivot and default orders.  It fails
  (without raising) if the matrix has a perspective component, is singular, or has a shear that
  cannot be expressed as scale followed by rotation.

  The result is not unique: sign-paired scales and 180-degree rotations alias each other.  If the
  linear block has a negative determinant, exactly one scale component is negated, choosing the
  candidate whose largest rotation angle is smallest.

  Args:
    matrix: 4x4 affine matrix acting on row vectors.
    atol: Absolute tolerance with which the rebuilt matrix must reproduce `matrix`.

  Returns:
    A tuple `(success, scale, rotate, translate)`; the last three are `None` on failure.
  """
  matrix = np.asarray(matrix, np.float64)
  if matrix.shape != (4, 4):
    raise ValueError(f'Matrix shape {matrix.shape} is not (4, 4).')
  failure = False, None, None, None
  if not np.all(np.isfinite(matrix)) or not is_affine(matrix):
    return failure
  translate = matrix[3, :3].copy()
  linear = matrix[:3, :3]
  magnitude = np.linalg.norm(linear, axis=1)
  determinant = np.linalg.det(linear)
  if not np.all(magnitude > 0.0) or abs(determinant) <= 1e-12 * np.prod(magnitude):
    return failure

  flips = [(1, 1, 1)] if determinant > 0.0 else [(-1, 1, 1), (1, -1, 1), (1, 1, -1)]
  best: tuple[_NDArray, _NDArray] | None = None
  for flip in flips:
    scale = magnitude * flip
    rotation = linear / scale[:, None]
    with warnings.catch_warnings():
      warnings.simplefilter('ignore', UserWarning)  # "Gimbal lock detected".
      angles = scipy.spatial.transform.Rotation.from_matrix(rotation.T).as_euler('xyz')
    angles = np.where(np.abs(angles) < _ANGLE_EPSILON, 0.0, angles)
    rebuilt, _ = affine_matrix(scale=scale, rotate=angles, translate=translate)
    if not np.allclose(rebuilt, matrix, rtol=0.0, atol=atol):
      continue
    if best is None or np.abs(angles).max() < np.abs(best[1]).max():
      best = scale, angles

  if best is None:
    return failure
  return True, best[0], best[1], translate


class Transform:
  """Linear index-to-world map of a grid, stored as a 4x4 affine matrix acting on row vectors.

  Mutators named `pre_*` apply the new step before the existing map (i.e., in index space) and
  those named `post_*` apply it after the existing map (in world space).
  """

  def __init__(self, matrix: _ArrayLike | None = None) -> None:
    self._matrix = np.eye(4) if matrix is None else _as_affine_matrix(matrix)
    self._inverse = _invert_affine(self._matrix)

  @classmethod
  def create_linear_transform(cls, voxel_size: _ArrayLike = 1.0) -> Transform:
    """Return a transform scaling index space by `voxel_size` (a scalar or per-axis 3-vector)."""
    voxel_size = _as_vec3(voxel_size, 'voxel size')
    if np.any(voxel_size == 0.0):
      raise ValueError(f'Voxel size {tuple(voxel_size)} must be nonzero.')
    return cls(_scale_matrix(voxel_size))

  def _set(self, matrix: _NDArray) -> None:
    inverse = _invert_affine(matrix)
    self._matrix, self._inverse = matrix, inverse

  @property
  def matrix(self) -> _NDArray:
    """Index-to-world matrix (a copy)."""
    return self._matrix.copy()

  @property
  def inverse_matrix(self) -> _NDArray:
    """World-to-index matrix (a copy)."""
    return self._inverse.copy()

  def pre_scale(self, scale: _ArrayLike) -> None:
    self._set(_scale_matrix(_as_vec3(scale, 'scale')) @ self._matrix)

  def post_scale(self, scale: _ArrayLike) -> None:
    self._set(self._matrix @ _scale_matrix(_as_vec3(scale, 'scale')))

  def pre_translate(self, translate: _ArrayLike) -> None:
    self._set(_translation_matrix(_as_vec3(translate, 'translation')) @ self._matrix)

  def post_translate(self, translate: _ArrayLike) -> None:
    self._set(self._matrix @ _translation_matrix(_as_vec3(translate, 'translation')))

  def pre_rotate(self, angle: float, axis: str = 'x') -> None:
    self._set(_axis_rotation_matrix(angle, axis) @ self._matrix)

  def post_rotate(self, angle: float, axis: str = 'x') -> None:
    self._set(self._matrix @ _axis_rotation_matrix(angle, axis))

  def index_to_world(self, xyz: _ArrayLike) -> _NDArray:
    return _apply_affine(self._matrix, xyz)

  def world_to_index(self, xyz: _ArrayLike) -> _NDArray:
    return _apply_affine(self._inverse, xyz)

  def voxel_size(self) -> _NDArray:
    """Return the world-space length of a unit step along each index axis."""
    return np.linalg.norm(self._matrix[:3, :3], axis=1)

  def copy(self) -> Transform:
    return Transform(self._matrix)

  def __eq__(self, other: object) -> bool:
    if not isinstance(other, Transform):
      return NotImplemented
    return bool(np.array_equal(self._matrix, other._matrix))

  def __repr__(self) -> str:
    return f'Transform({self._matrix.tolist()!r})'


@dataclasses.dataclass
class _Tile:
  """A block whose 8x8x8 voxels share one value and one active state."""

  value: _NDArray
  active: bool


@dataclasses.dataclass
class _Leaf:
  """A block with per-voxel values and active states."""

  values: _NDArray
  mask: _NDArray


_Block = Union[_Tile, _Leaf]


@dataclasses.dataclass(frozen=True)
class Uniform:
  """A region of constant value and active state (a tile)."""

  bbox: CoordBBox
  value: Any
  active: bool


@dataclasses.dataclass(frozen=True)
class Voxel:
  """A single stored voxel."""

  coord: tuple[int, int, int]
  value: Any
  active: bool


def _unwrap(value: _NDArray) -> Any:
  """Return a numpy scalar for a scalar value, or a copy of a vector value."""
  return value[()] if value.ndim == 0 else value.copy()


def _values_equal(values: _NDArray, value: _NDArray, tolerance: float = 0.0) -> _NDArray:
  """Compare `values` (with leading voxel dimensions) against a single value, per voxel."""
  if tolerance == 0.0 or _is_discrete(values.dtype):
    equal = values == value
  else:
    equal = np.abs(values - value) <= tolerance
  return equal.reshape(equal.shape[:equal.ndim - value.ndim] + (value.size,)).all(axis=-1)


class Grid:
  """Sparse volumetric grid of scalar or 3-vector values with per-voxel active states.

  Voxels are stored in blocks of 8x8x8; a block is either a uniform tile or a dense leaf.  Voxels
  in absent blocks have the background value and are inactive.

  Args:
    background: Value of all voxels never explicitly set.  Its shape (scalar or `(3,)`) fixes the
      value shape of the grid.
    dtype: Value type; if `None`, it is inferred from `background`.
    transform: Index-to-world `Transform`; it defaults to the identity.
    name: Optional grid name.
  """

  def __init__(self, background: _ArrayLike = 0.0, *, dtype: _DTypeLike = None,
               transform: Transform | None = None, name: str | None = None) -> None:
    background = np.array(background, dtype=dtype)
    if background.ndim > 1:
      raise ValueError(f'Background {background!r} is neither a scalar nor a vector.')
    if not (np.issubdtype(background.dtype, np.number) or _is_discrete(background.dtype)):
      raise ValueError(f'Type {background.dtype} is not numeric or bool.')
    self._background = background
    self._blocks: dict[tuple[int, int, int], _Block] = {}
    self._transform = Transform() if transform is None else transform
    self.name = name

  @classmethod
  def create_float(cls, background: float = 0.0, **kwargs: Any) -> Grid:
    return cls(background, dtype=np.float32, **kwargs)

  @classmethod
  def create_double(cls, background: float = 0.0, **kwargs: Any) -> Grid:
    return cls(background, dtype=np.float64, **kwargs)

  @classmethod
  def create_int32(cls, background: int = 0, **kwargs: Any) -> Grid:
    return cls(background, dtype=np.int32, **kwargs)

  @classmethod
  def create_int64(cls, background: int = 0, **kwargs: Any) -> Grid:
    return cls(background, dtype=np.int64, **kwargs)

  @classmethod
  def create_bool(cls, background: bool = False, **kwargs: Any) -> Grid:
    return cls(background, dtype=np.bool_, **kwargs)

  @classmethod
  def create_vec3s(cls, background: _ArrayLike = (0.0, 0.0, 0.0), **kwargs: Any) -> Grid:
    return cls(background, dtype=np.float32, **kwargs)

  @classmethod
  def create_vec3d(cls, background: _ArrayLike = (0.0, 0.0, 0.0), **kwargs: Any) -> Grid:
    return cls(background, dtype=np.float64, **kwargs)

  @property
  def background(self) -> Any:
    return _unwrap(self._background)

  @property
  def dtype(self) -> _DType:
    return self._background.dtype

  @property
  def value_shape(self) -> tuple[int, ...]:
    return self._background.shape

  @property
  def transform(self) -> Transform:
    return self._transform

  @transform.setter
  def transform(self, transform: Transform) -> None:
    self._transform = transform

  def __repr__(self) -> str:
    return (f'Grid(name={self.name!r}, dtype={self.dtype}, value_shape={self.value_shape},'
            f' background={self.background!r}, blocks={len(self._blocks)})')

  def _as_value(self, value: _ArrayLike) -> _NDArray:
    value = np.asarray(value)
    if value.shape not in ((), self.value_shape):
      raise ValueError(f'Value {value!r} does not have shape {self.value_shape}.')
    return np.broadcast_to(value.astype(self.dtype), self.value_shape).copy()

  def _check_coord(self, xyz: _ArrayLike) -> tuple[int, int, int]:
    coord = _as_coord(xyz)
    if not all(-COORD_LIMIT <= c < COORD_LIMIT for c in coord):
      raise ValueError(f'Coordinate {coord} lies outside [{-COORD_LIMIT}, {COORD_LIMIT}).')
    return coord

  def _densify(self, origin: tuple[int, int, int]) -> _Leaf:
    """Return the leaf at `origin`, converting a tile or creating a background leaf."""
    block = self._blocks.get(origin)
    if isinstance(block, _Leaf):
      return block
    shape = (_DIM,) * 3
    if block is None:
      leaf = _Leaf(np.empty(shape + self.value_shape, self.dtype), np.zeros(shape, bool))
      leaf.values[...] = self._background
    else:
      leaf = _Leaf(np.empty(shape + self.value_shape, self.dtype), np.full(shape, block.active))
      leaf.values[...] = block.value
    self._blocks[origin] = leaf
    return leaf

  def probe_value(self, xyz: _ArrayLike) -> tuple[Any, bool]:
    """Return the `(value, active)` pair of the voxel at integer coordinate `xyz`."""
    x, y, z = _as_coord(xyz)
    block = self._blocks.get((x & ~_MASK, y & ~_MASK, z & ~_MASK))
    if block is None:
      return self.background, False
    if isinstance(block, _Tile):
      return _unwrap(block.value), block.active
    offset = x & _MASK, y & _MASK, z & _MASK
    return _unwrap(block.values[offset]), bool(block.mask[offset])

  def get_value(self, xyz: _ArrayLike) -> Any:
    return self.probe_value(xyz)[0]

  def is_value_on(self, xyz: _ArrayLike) -> bool:
    return self.probe_value(xyz)[1]

  def _set(self, xyz: _ArrayLike, value: _ArrayLike | None, active: bool | None) -> None:
    x, y, z = self._check_coord(xyz)
    origin = x & ~_MASK, y & ~_MASK, z & ~_MASK
    block = self._blocks.get(origin)
    if value is not None:
      value = self._as_value(value)
    if isinstance(block, _Tile) and (active is None or block.active == active) and (
        value is None or np.array_equal(block.value, value)):
      return
    leaf = self._densify(origin)
    offset = x & _MASK, y & _MASK, z & _MASK
    if value is not None:
      leaf.values[offset] = value
    if active is not None:
      leaf.mask[offset] = active

  def set_value(self, xyz: _ArrayLike, value: _ArrayLike) -> None:
    """Set the voxel value and mark it active."""
    self._set(xyz, value, True)

  def set_value_on(self, xyz: _ArrayLike, value: _ArrayLike | None = None) -> None:
    """Mark the voxel active, optionally also setting its value."""
    self._set(xyz, value, True)

  def set_value_off(self, xyz: _ArrayLike, value: _ArrayLike | None = None) -> None:
    """Mark the voxel inactive, optionally also setting its value."""
    self._set(xyz, value, False)

  def set_active_state(self, xyz: _ArrayLike, on: bool) -> None:
    self._set(xyz, None, bool(on))

  def fill(self, bbox: CoordBBox, value: _ArrayLike, active: bool = True) -> None:
    """Set all voxels in `bbox` to `value` and `active`; fully covered blocks become tiles."""
    if bbox.is_empty:
      return
    self._check_coord(bbox.min)
    self._check_coord(bbox.max)
    value = self._as_value(value)
    active = bool(active)
    ranges = [range(lo & ~_MASK, hi + 1, _DIM) for lo, hi in zip(bbox.min, bbox.max)]
    for x, y, z in itertools.product(*ranges):
      block_bbox = CoordBBox((x, y, z), (x + _MASK, y + _MASK, z + _MASK))
      overlap = block_bbox.intersect(bbox)
      if overlap == block_bbox:
        self._blocks[x, y, z] = _Tile(value.copy(), active)
        continue
      leaf = self._densify((x, y, z))
      slices = tuple(slice(lo - o, hi - o + 1) for lo, hi, o in zip(overlap.min, overlap.max,
                                                                     (x, y, z)))
      leaf.values[slices] = value
      leaf.mask[slices] = active

  def probe_values(self, coords: _ArrayLike) -> tuple[_NDArray, _NDArray]:
    """Return the values `(N, *value_shape)` and active states `(N,)` at integer `(N, 3)` coords."""
    coords = np.asarray(coords, np.int64).reshape(-1, 3)
    values = np.empty((len(coords),) + self.value_shape, self.dtype)
    values[...] = self._background
    active = np.zeros(len(coords), bool)
    valid = np.flatnonzero(_in_range(coords))
    for origin, group in _group_by_block(coords[valid]):
      block = self._blocks.get(origin)
      if block is None:
        continue
      index = valid[group]
      if isinstance(block, _Tile):
        values[index] = block.value
        active[index] = block.active
      else:
        offset = coords[index] & _MASK
        values[index] = block.values[offset[:, 0], offset[:, 1], offset[:, 2]]
        active[index] = block.mask[offset[:, 0], offset[:, 1], offset[:, 2]]
    return values, active

  def set_values(self, coords: _ArrayLike, values: _ArrayLike, active: _ArrayLike) -> None:
    """Write values and active states at the integer `(N, 3)` coords."""
    coords = np.asarray(coords, np.int64).reshape(-1, 3)
    values = np.broadcast_to(np.asarray(values).astype(self.dtype, copy=False),
                             (len(coords),) + self.value_shape)
    active = np.broadcast_to(np.asarray(active, bool), (len(coords),))
    if not np.all(_in_range(coords)):
      raise ValueError(f'Some coordinates lie outside [{-COORD_LIMIT}, {COORD_LIMIT}).')
    for origin, group in _group_by_block(coords):
      leaf = self._densify(origin)
      offset = coords[group] & _MASK
      leaf.values[offset[:, 0], offset[:, 1], offset[:, 2]] = values[group]
      leaf.mask[offset[:, 0], offset[:, 1], offset[:, 2]] = active[group]

  def _is_background_tile(self, block: _Block) -> bool:
    return (isinstance(block, _Tile) and not block.active and
            np.array_equal(block.value, self._background))

  def iter_regions(self, active_only: bool = False) -> Iterator[Uniform | Voxel]:
    """Yield the stored content as `Uniform` tiles and individual `Voxel`s, in block order.

    Inactive voxels and tiles holding the background value are omitted; with `active_only`, all
    inactive content is omitted.
    """
    for origin, block in sorted(self._blocks.items()):
      if isinstance(block, _Tile):
        if block.active or (not active_only and not self._is_background_tile(block)):
          bbox = CoordBBox(origin, np.add(origin, _MASK))
          yield Uniform(bbox, _unwrap(block.value), block.active)
        continue
      keep = block.mask.copy()
      if not active_only:
        keep |= ~_values_equal(block.values, self._background)
      for offset in np.argwhere(keep):
        i, j, k = offset
        yield Voxel(_as_coord(np.add(origin, offset)), _unwrap(block.values[i, j, k]),
                    bool(block.mask[i, j, k]))

  def iter_value_on(self) -> Iterator[tuple[tuple[int, int, int], Any]]:
    """Yield `(coord, value)` for every active voxel, including those inside active tiles."""
    for region in self.iter_regions(active_only=True):
      if isinstance(region, Voxel):
        yield region.coord, region.value
      else:
        for coord in region.bbox.coords():
          yield _as_coord(coord), region.value

  def active_voxel_count(self) -> int:
    count = 0
    for block in self._blocks.values():
      if isinstance(block, _Tile):
        count += _DIM**3 if block.active else 0
      else:
        count += int(np.count_nonzero(block.mask))
    return count

  def active_tile_count(self) -> int:
    return sum(1 for block in self._blocks.values() if isinstance(block, _Tile) and block.active)

  def leaf_count(self) -> int:
    return sum(1 for block in self._blocks.values() if isinstance(block, _Leaf))

  def eval_active_voxel_bounding_box(self) -> CoordBBox:
    """Return the bounding box of all active voxels (empty if there are none)."""
    bbox = CoordBBox.empty()
    for origin, block in self._blocks.items():
      if isinstance(block, _Tile):
        if block.active:
          bbox = bbox.expand(CoordBBox(origin, np.add(origin, _MASK)))
      elif block.mask.any():
        offsets = np.argwhere(block.mask)
        bbox = bbox.expand(CoordBBox(np.add(origin, offsets.min(axis=0)),
                                     np.add(origin, offsets.max(axis=0))))
    return bbox

  def eval_active_voxel_dim(self) -> tuple[int, int, int]:
    return self.eval_active_voxel_bounding_box().dim

  def empty(self) -> bool:
    """Return True if the grid stores no blocks at all."""
    return not self._blocks

  def prune(self, tolerance: float = 0.0) -> None:
    """Collapse uniform leaves into tiles and remove inactive tiles of background value.

    Args:
      tolerance: Leaves whose values all lie within this distance of their first value (and whose
        active states agree) are collapsed.
    """
    for origin in list(self._blocks):
      block = self._blocks[origin]
      if isinstance(block, _Leaf):
        first_active = block.mask.flat[0]
        first_value = block.values[0, 0, 0]
        if np.all(block.mask == first_active) and np.all(
            _values_equal(block.values, first_value, tolerance)):
          block = _Tile(np.array(first_value), bool(first_active))
          self._blocks[origin] = block
      if isinstance(block, _Tile) and not block.active and np.all(
          _values_equal(block.value, self._background, tolerance)):
        del self._blocks[origin]

  def clear(self) -> None:
    self._blocks = {}

  def _copy_block(self, block: _Block) -> _Block:
    if isinstance(block, _Tile):
      return _Tile(block.value.astype(self.dtype), block.active)
    return _Leaf(block.values.astype(self.dtype), block.mask.copy())

  def copy(self) -> Grid:
    """Return a deep copy of the grid, including its transform."""
    grid = Grid(self._background, transform=self._transform.copy(), name=self.name)
    grid._blocks = {origin: grid._copy_block(block) for origin, block in self._blocks.items()}
    return grid

  def _replace_content(self, other: Grid) -> None:
    """Replace the stored blocks with a copy of those of `other`, converting the value type."""
    self._blocks = {origin: self._copy_block(block) for origin, block in other._blocks.items()}

  def merge(self, other: Grid) -> None:
    """Union the content of `other` (which should be disjoint from this grid) into this grid.

    Voxels of `other` that are active or differ from its background overwrite this grid's voxels.
    """
    _check_eq(other.value_shape, self.value_shape)
    for origin, block in other._blocks.items():
      if other._is_background_tile(block):
        continue
      if origin not in self._blocks or self._is_background_tile(self._blocks[origin]):
        self._blocks[origin] = self._copy_block(block)
        continue
      leaf = self._densify(origin)
      if isinstance(block, _Tile):
        leaf.values[...] = block.value
        leaf.mask[...] = block.active
      else:
        written = block.mask | ~_values_equal(block.values, other._background)
        leaf.values[written] = block.values[written]
        leaf.mask[written] = block.mask[written]

  def accessor(self) -> ValueAccessor:
    """Return a read-only snapshot accessor for fast vectorized lookups."""
    return ValueAccessor(self)


class ValueAccessor:
  """Read-only, vectorized view of a grid's content at the time of creation.

  All blocks are stacked into dense arrays and located by binary search on their packed keys, so a
  lookup of N coordinates costs O(N log B) for B stored blocks, with no Python loop over blocks.
  """

  def __init__(self, grid: Grid) -> None:
    self.dtype = grid.dtype
    self.value_shape = grid.value_shape
    self._background = grid._background.copy()
    items = [(origin, block) for origin, block in grid._blocks.items()
             if not grid._is_background_tile(block)]
    origins = np.array([origin for origin, _ in items], np.int64).reshape(-1, 3)
    keys = _block_keys(origins)
    order = np.argsort(keys)
    self._keys = keys[order]
    shape = (len(items),) + (_DIM,) * 3
    self._values = np.empty(shape + self.value_shape, self.dtype)
    self._mask = np.empty(shape, bool)
    content = np.empty((len(items), 2, 3), np.int64)
    for slot, index in enumerate(order):
      origin, block = items[index]
      if isinstance(block, _Tile):
        self._values[slot] = block.value
        self._mask[slot] = block.active
        content[slot] = origin, np.add(origin, _MASK)
      else:
        self._values[slot] = block.values
        self._mask[slot] = block.mask
        offsets = np.argwhere(block.mask | ~_values_equal(block.values, self._background))
        if len(offsets):
          content[slot] = np.add(origin, offsets.min(axis=0)), np.add(origin, offsets.max(axis=0))
        else:
          content[slot] = np.add(origin, _DIM), origin  # Empty box.
    self.content_boxes = content
    """Per stored block, the `[min, max]` box of its voxels that are active or non-background."""

  def probe_values(self, coords: _ArrayLike) -> tuple[_NDArray, _NDArray]:
    """Return the values `(N, *value_shape)` and active states `(N,)` at integer `(N, 3)` coords."""
    coords = np.asarray(coords, np.int64).reshape(-1, 3)
    values = np.empty((len(coords),) + self.value_shape, self.dtype)
    values[...] = self._background
    active = np.zeros(len(coords), bool)
    if len(self._keys) == 0 or len(coords) == 0:
      return values, active
    valid = _in_range(coords)
    keys = _block_keys(np.where(valid[:, None], coords, 0))
    slot = np.minimum(np.searchsorted(self._keys, keys), len(self._keys) - 1)
    found = np.flatnonzero(valid & (self._keys[slot] == keys))
    offset = coords[found] & _MASK
    index = slot[found], offset[:, 0], offset[:, 1], offset[:, 2]
    values[found] = self._values[index]
    active[found] = self._mask[index]
    return values, active


def _get_accessor(source: Grid | ValueAccessor) -> ValueAccessor:
  return source.accessor() if isinstance(source, Grid) else source


def _as_points(points: _ArrayLike) -> tuple[_NDArray, tuple[int, ...]]:
  """Return the points flattened to shape `(N, 3)`, and their original leading shape."""
  points = np.asarray(points, np.float64)
  if points.shape[-1:] != (3,):
    raise ValueError(f'Points shape {points.shape} does not end in 3.')
  return points.reshape(-1, 3), points.shape[:-1]


@dataclasses.dataclass(frozen=True)
class Sampler:
  """Abstract base class for interpolation kernels reading a sparse grid.

  A sampler evaluates the grid at continuous index-space points.  It returns both an interpolated
  value and an active state, which is True if any voxel in the stencil read for that point is
  active.  Value types that cannot be blended (bool) take the value of the nearest voxel.
  """

  name: str
  """Sampler name."""

  radius: int
  """Number of voxels read on each side of a sample point (the stencil radius)."""

  @abc.abstractmethod
  def sample(self, source: Grid | ValueAccessor,
             points: _ArrayLike) -> tuple[_NDArray, _NDArray]:
    """Return `(values, active)` at the continuous index-space `points` (shape `(..., 3)`).

    The results have shapes `points.shape[:-1] + value_shape` and `points.shape[:-1]`.
    """


class PointSampler(Sampler):
  """Nearest-neighbor lookup, returning the stored value and active state verbatim."""

  def __init__(self) -> None:
    super().__init__(name='point', radius=0)

  def sample(self, source: Grid | ValueAccessor,
             points: _ArrayLike) -> tuple[_NDArray, _NDArray]:
    accessor = _get_accessor(source)
    points, shape = _as_points(points)
    values, active = accessor.probe_values(np.floor(points + 0.5).astype(np.int64))
    return values.reshape(shape + accessor.value_shape), active.reshape(shape)


class _StencilSampler(Sampler):
  """Separable interpolation over a cubic stencil of `size**3` voxels."""

  size: int = 0

  @abc.abstractmethod
  def _stencil(self, points: _NDArray) -> tuple[_NDArray, _NDArray]:
    """Return the first stencil voxel `(N, 3)` and the fractional offsets `(N, 3)`."""

  @abc.abstractmethod
  def _interpolate_axis(self, values: _NDArray, frac: _NDArray) -> _NDArray:
    """Collapse axis 1 (of length `size`) of `values` at fractional offsets `frac`."""

  def _blend(self, values: _NDArray, frac: _NDArray) -> _NDArray:
    """Interpolate the `(N, size, size, size, *value_shape)` stencil values in float precision."""
    blended = values.astype(np.result_type(values.dtype, np.float64))
    for dim in range(3):
      frac_dim = frac[:, dim].reshape((-1,) + (1,) * (blended.ndim - 2))
      blended = self._interpolate_axis(blended, frac_dim)
    return _from_float(blended, values.dtype)

  def sample(self, source: Grid | ValueAccessor,
             points: _ArrayLike) -> tuple[_NDArray, _NDArray]:
    accessor = _get_accessor(source)
    points, shape = _as_points(points)
    num, size = len(points), self.size
    first, frac = self._stencil(points)
    offsets = np.moveaxis(np.indices((size,) * 3), 0, -1).reshape(-1, 3)
    coords = first[:, None, :] + offsets
    values, active = accessor.probe_values(coords.reshape(-1, 3))
    values = values.reshape((num, size, size, size) + accessor.value_shape)
    active = active.reshape(num, size**3).any(axis=1)
    if _is_discrete(accessor.dtype):
      nearest = np.floor(points + 0.5).astype(np.int64) - first
      result = values[np.arange(num), nearest[:, 0], nearest[:, 1], nearest[:, 2]]
    else:
      result = self._blend(values, frac)
    return result.reshape(shape + accessor.value_shape), active.reshape(shape)


class BoxSampler(_StencilSampler):
  """Trilinear interpolation over the 2x2x2 voxels surrounding each point."""

  size = 2

  def __init__(self) -> None:
    super().__init__(name='box', radius=1)

  def _stencil(self, points: _NDArray) -> tuple[_NDArray, _NDArray]:
    first = np.floor(points)
    return first.astype(np.int64), points - first

  def _interpolate_axis(self, values: _NDArray, frac: _NDArray) -> _NDArray:
    # The lerp form reproduces constant data exactly.
    return values[:, 0] + (values[:, 1] - values[:, 0]) * frac


class QuadraticSampler(_StencilSampler):
  """Triquadratic interpolation over the 3x3x3 voxels centered on the voxel nearest each point.

  Along each axis, a parabola is fit through the three samples at offsets -1, 0, and 1 and is
  evaluated at the fractional offset in [-0.5, 0.5).
  """

  size = 3

  def __init__(self) -> None:
    super().__init__(name='quadratic', radius=2)

  def _stencil(self, points: _NDArray) -> tuple[_NDArray, _NDArray]:
    nearest = np.floor(points + 0.5)
    return nearest.astype(np.int64) - 1, points - nearest

  def _interpolate_axis(self, values: _NDArray, frac: _NDArray) -> _NDArray:
    v0, v1, v2 = values[:, 0], values[:, 1], values[:, 2]
    a = 0.5 * (v0 + v2) - v1
    b = 0.5 * (v2 - v0)
    return frac * (frac * a + b) + v1


_DICT_SAMPLERS = {
    'point': PointSampler(),
    'box': BoxSampler(),
    'quadratic': QuadraticSampler(),
}

SAMPLERS = list(_DICT_SAMPLERS)
r"""Shortcut names for the predefined samplers:

| name          | `Sampler`            | radius | stencil | a.k.a. |
|---------------|----------------------|:------:|---------|--------|
| `'point'`     | `PointSampler()`     | 0      | 1       | *nearest* |
| `'box'`       | `BoxSampler()`       | 1      | 2x2x2   | *trilinear* |
| `'quadratic'` | `QuadraticSampler()` | 2      | 3x3x3   | *triquadratic* |

See the source code for extensibility.
"""


def _get_sampler(sampler: str | Sampler) -> Sampler:
  """Return a `Sampler`, which can be specified as a name in `SAMPLERS`."""
  return sampler if isinstance(sampler, Sampler) else _DICT_SAMPLERS[sampler]


def _check_compatible(source: Grid, target: Grid) -> None:
  if source is target:
    raise ValueError('The source and target grids must be distinct.')
  if source.value_shape != target.value_shape:
    raise ValueError(f'Source value shape {source.value_shape} differs from target value'
                     f' shape {target.value_shape}.')


_DEFAULT_MAX_BLOCK_SIZE = 40_000

# Selects, for each of the 8 box corners, min (False) or max (True) on each axis.
_CORNER_SELECTOR = np.array(list(itertools.product([False, True], repeat=3)))


class GridTransformer:
  """Resample a sparse grid into another sparse grid under an index-to-index affine map.

  The map takes source index coordinates to target index coordinates.  Only the target region
  covered by the mapped bounding box of the source's active voxels (padded by half a voxel for
  rounding and dilated by the sampler radius) is written.  Within it, each target voxel maps back
  into the source and is sampled; samples that are inactive and equal to the target background are
  not stored, so the target remains sparse.

  When `transform_tiles` is set and the map is axis-aligned (no rotation), source tiles are copied
  directly onto the target voxels whose centers map back inside the tile, preserving their value
  and active state exactly.

  Args:
    pivot: Center of scaling and rotation.
    scale: Per-axis scale factors; each must be finite and nonzero.
    rotate: Rotation angles in radians about the X, Y, and Z axes.
    translate: Translation applied last.
    xform_order: Application order of scale, rotation, and translation; see `affine_matrix`.
    rot_order: Application order of the axis rotations; see `affine_matrix`.
    sampler: Interpolation kernel, as a name in `SAMPLERS` or a `Sampler` instance.
    transform_tiles: Copy source tiles directly when the map is axis-aligned.
    threaded: Sample batches of target blocks concurrently on a thread pool.
    num_threads: Maximum number of worker threads (`None` lets the executor decide).
    max_block_size: Maximum number of target voxels sampled per batch.
  """

  def __init__(self,
               pivot: _ArrayLike = 0.0,
               scale: _ArrayLike = 1.0,
               rotate: _ArrayLike = 0.0,
               translate: _ArrayLike = 0.0,
               *,
               xform_order: str = 'srt',
               rot_order: str = 'xyz',
               sampler: str | Sampler = 'box',
               transform_tiles: bool = True,
               threaded: bool = False,
               num_threads: int | None = None,
               max_block_size: int = _DEFAULT_MAX_BLOCK_SIZE) -> None:
    self._matrix, self._inverse = affine_matrix(
        pivot, scale, rotate, translate, xform_order=xform_order, rot_order=rot_order)
    self._sampler = _get_sampler(sampler)
    self.transform_tiles = transform_tiles
    self.threaded = threaded
    self.num_threads = num_threads
    if max_block_size < 1:
      raise ValueError(f'Block size {max_block_size} must be positive.')
    self.max_block_size = max_block_size

  @classmethod
  def from_matrix(cls, matrix: _ArrayLike, **kwargs: Any) -> GridTransformer:
    """Return a transformer for an arbitrary invertible 4x4 affine `matrix` (row vectors)."""
    matrix = _as_affine_matrix(matrix)
    transformer = cls(**kwargs)
    transformer._matrix, transformer._inverse = matrix, _invert_affine(matrix)
    return transformer

  @property
  def matrix(self) -> _NDArray:
    """Source-index to target-index matrix (a copy)."""
    return self._matrix.copy()

  @property
  def inverse_matrix(self) -> _NDArray:
    return self._inverse.copy()

  @property
  def sampler(self) -> Sampler:
    return self._sampler

  @sampler.setter
  def sampler(self, sampler: str | Sampler) -> None:
    self._sampler = _get_sampler(sampler)

  @property
  def is_axis_aligned(self) -> bool:
    return is_diagonal(self._matrix)

  def target_region(self, bbox: CoordBBox, radius: int = 0) -> CoordBBox:
    """Return the target voxel box that may be written for source content within `bbox`."""
    if bbox.is_empty:
      return CoordBBox.empty()
    corners = _apply_affine(self._matrix, bbox.corners())
    lo = np.floor(corners.min(axis=0) - 0.5).astype(np.int64) - radius
    hi = np.ceil(corners.max(axis=0) + 0.5).astype(np.int64) + radius
    return CoordBBox(lo, hi)

  def _tile_footprint(self, bbox: CoordBBox) -> CoordBBox:
    """Return the target voxels whose centers map back (to the nearest voxel) inside `bbox`."""
    scale, offset = np.diag(self._matrix)[:3], self._matrix[3, :3]
    inverse_scale, inverse_offset = np.diag(self._inverse)[:3], self._inverse[3, :3]
    lo, hi = [], []
    for dim in range(3):
      ends = (np.array([bbox.min[dim] - 0.5, bbox.max[dim] + 0.5]) * scale[dim] + offset[dim])
      candidates = np.arange(np.floor(ends.min()) - 1, np.ceil(ends.max()) + 2)
      nearest = np.floor(candidates * inverse_scale[dim] + inverse_offset[dim] + 0.5)
      inside = candidates[(nearest >= bbox.min[dim]) & (nearest <= bbox.max[dim])]
      if len(inside) == 0:
        return CoordBBox.empty()
      lo.append(inside.min())
      hi.append(inside.max())
    return CoordBBox(np.array(lo, np.int64), np.array(hi, np.int64))

  def _transform_tiles(self, source: Grid, target: Grid,
                       region: CoordBBox) -> list[CoordBBox]:
    """Copy the source tiles onto the target; return the target boxes thereby resolved."""
    resolved = []
    for item in source.iter_regions():
      if not isinstance(item, Uniform):
        continue
      footprint = self._tile_footprint(item.bbox).intersect(region)
      if footprint.is_empty:
        continue
      target.fill(footprint, item.value, item.active)
      resolved.append(footprint)
    return resolved

  def _target_blocks(self, region: CoordBBox, accessor: ValueAccessor, radius: int,
                     resolved: list[CoordBBox]) -> list[CoordBBox]:
    """Return the target-block-aligned parts of `region` whose sampling may read source content."""
    axes = [np.arange(lo & ~_MASK, hi + 1, _DIM) for lo, hi in zip(region.min, region.max)]
    origins = np.moveaxis(np.array(np.meshgrid(*axes, indexing='ij')), 0, -1).reshape(-1, 3)
    box_lo = np.maximum(origins, region.min)
    box_hi = np.minimum(origins + _MASK, region.max)
    content_lo = accessor.content_boxes[:, 0]
    content_hi = accessor.content_boxes[:, 1]
    keep = np.zeros(len(origins), bool)
    chunk = max(1, (1 << 22) // max(1, len(content_lo)))
    for start in range(0, len(origins), chunk):
      lo, hi = box_lo[start:start + chunk], box_hi[start:start + chunk]
      corners = np.where(_CORNER_SELECTOR, hi[:, None], lo[:, None])
      mapped = _apply_affine(self._inverse, corners)
      source_lo = np.floor(mapped.min(axis=1)) - radius - 1
      source_hi = np.ceil(mapped.max(axis=1)) + radius + 1
      overlap = np.all((source_lo[:, None] <= content_hi) & (source_hi[:, None] >= content_lo),
                       axis=2)
      keep[start:start + chunk] = overlap.any(axis=1)
    for box in resolved:
      keep &= ~np.all((box_lo >= box.min) & (box_hi <= box.max), axis=1)
    return [CoordBBox(lo, hi) for lo, hi in zip(box_lo[keep], box_hi[keep])]

  def _batches(self, boxes: list[CoordBBox]) -> list[list[CoordBBox]]:
    batches: list[list[CoordBBox]] = []
    size = self.max_block_size
    for box in boxes:
      if not batches or size + box.volume > self.max_block_size:
        batches.append([])
        size = 0
      batches[-1].append(box)
      size += box.volume
    return batches

  def _sample_batch(self, batch: list[CoordBBox], accessor: ValueAccessor, sampler: Sampler,
                    resolved: list[CoordBBox]) -> tuple[_NDArray, _NDArray, _NDArray]:
    coords = np.concatenate([box.coords() for box in batch])
    for box in resolved:
      coords = coords[~np.all((coords >= box.min) & (coords <= box.max), axis=1)]
    values, active = sampler.sample(accessor, _apply_affine(self._inverse, coords))
    return coords, values, active

  @staticmethod
  def _write(target: Grid, coords: _NDArray, values: _NDArray, active: _NDArray) -> int:
    """Store the samples that are active or differ from the target background; return the count.

    An inactive sample never overwrites an active target voxel.
    """
    values = _from_float(values, target.dtype) if values.dtype != target.dtype else values
    keep = active | ~_values_equal(values, target._background)
    inactive = np.flatnonzero(keep & ~active)
    if len(inactive):
      _, already_on = target.probe_values(coords[inactive])
      keep[inactive[already_on]] = False
    if not np.any(keep):
      return 0
    target.set_values(coords[keep], values[keep], active[keep])
    return int(np.count_nonzero(keep))

  def transform_grid(self, source: Grid, target: Grid, *, sampler: str | Sampler | None = None,
                     debug: bool = False) -> None:
    """Resample `source` into `target` under this transformer's map.

    The source is only read.  The target's transform is not modified, and target voxels outside
    the written region are left unchanged.  Consider calling `target.prune()` afterwards.

    Args:
      source: Grid to read.
      target: Grid to write; its value type may differ from that of `source`.
      sampler: Override of the transformer's sampler for this call.
      debug: Show internal information.
    """
    _check_compatible(source, target)
    sampler2 = self._sampler if sampler is None else _get_sampler(sampler)
    bbox = source.eval_active_voxel_bounding_box()
    if bbox.is_empty:
      if debug:
        print('(transform_grid: source has no active voxels.)')
      return
    region = self.target_region(bbox, sampler2.radius)

    resolved = []
    if self.transform_tiles and self.is_axis_aligned:
      resolved = self._transform_tiles(source, target, region)

    accessor = source.accessor()
    boxes = self._target_blocks(region, accessor, sampler2.radius, resolved)
    batches = self._batches(boxes)
    if debug:
      print(f'(transform_grid: region {region.min}-{region.max}, {len(resolved)} tiles copied,'
            f' {len(boxes)} target blocks in {len(batches)} batches.)')

    def process(batch: list[CoordBBox]) -> tuple[_NDArray, _NDArray, _NDArray]:
      return self._sample_batch(batch, accessor, sampler2, resolved)

    num_written = 0
    if self.threaded and len(batches) > 1:
      with concurrent.futures.ThreadPoolExecutor(self.num_threads) as executor:
        for result in executor.map(process, batches):
          num_written += self._write(target, *result)
    else:
      for batch in batches:
        num_written += self._write(target, *process(batch))
    if debug:
      print(f'(transform_grid: {num_written} voxels written.)')


def transform_grid(source: Grid, target: Grid, matrix: _ArrayLike, *,
                   sampler: str | Sampler = 'box', debug: bool = False, **kwargs: Any) -> None:
  """Resample `source` into `target` under the index-to-index affine `matrix` (row vectors).

  Args:
    source: Grid to read.
    target: Grid to write.
    matrix: 4x4 affine matrix from source index space to target index space.
    sampler: Interpolation kernel, as a name in `SAMPLERS` or a `Sampler` instance.
    debug: Show internal information.
    **kwargs: Additional parameters for `GridTransformer`.
  """
  transformer = GridTransformer.from_matrix(matrix, sampler=sampler, **kwargs)
  transformer.transform_grid(source, target, debug=debug)


def resample_to_match(source: Grid, target: Grid, sampler: str | Sampler = 'box', *,
                      transform_tiles: bool = True, threaded: bool = False,
                      debug: bool = False) -> None:
  """Resample `source` into the index space of `target`, as given by the grid transforms.

  The index-to-index map is the source index-to-world transform followed by the target
  world-to-index transform.  If both transforms are equal, the target content becomes a copy of
  the source content.  The target transform is left unchanged.

  Args:
    source: Grid to read.
    target: Grid to write, whose transform defines the output sampling.
    sampler: Interpolation kernel, as a name in `SAMPLERS` or a `Sampler` instance.
    transform_tiles: Copy source tiles directly when the map is axis-aligned.
    threaded: Sample batches of target blocks concurrently.
    debug: Show internal information.

  >>> source = Grid.create_float()
  >>> source.fill(CoordBBox((0, 0, 0), (3, 3, 3)), 1.0)
  >>> target = Grid.create_float(transform=Transform.create_linear_transform(0.5))
  >>> resample_to_match(source, target, 'point')
  >>> target.active_voxel_count()
  512
  """
  _check_compatible(source, target)
  if source.transform == target.transform:
    if debug:
      print('(resample_to_match: identical transforms; copying the source content.)')
    target._replace_content(source)
    return

  matrix = source.transform.matrix @ target.transform.inverse_matrix
  success, scale, rotate, translate = decompose(matrix)
  kwargs: Any = dict(sampler=sampler, transform_tiles=transform_tiles, threaded=threaded)
  if success:
    if debug:
      print(f'(resample_to_match: scale={tuple(scale)} rotate={tuple(rotate)}'
            f' translate={tuple(translate)}.)')
    transformer = GridTransformer(scale=scale, rotate=rotate, translate=translate, **kwargs)
  else:
    if debug:
      print('(resample_to_match: map is not decomposable; using the raw matrix.)')
    transformer = GridTransformer.from_matrix(matrix, **kwargs)
  transformer.transform_grid(source, target, debug=debug)
