# %% [markdown]
# # gridxform: Example usage

# %%
"""Simple examples of `gridxform` usage."""

import numpy as np

import gridxform

# %% [markdown]
# ### Rotate and magnify a sparse grid

# %%
source = gridxform.Grid.create_float(0.0)
source.fill(gridxform.CoordBBox((0, 0, 0), (31, 31, 31)), 1.0)  # Mostly 8x8x8 tiles.
source.set_value((40, 5, 5), 3.0)
print(source.active_tile_count(), source.leaf_count(), source.active_voxel_count())

target = gridxform.Grid.create_float(0.0)
transformer = gridxform.GridTransformer(
    pivot=(16, 16, 16), scale=2.0, rotate=np.radians([0.0, 0.0, 30.0]), sampler='quadratic')
transformer.transform_grid(source, target, debug=True)
target.prune()
print(target.active_voxel_count(), target.eval_active_voxel_bounding_box())

# %% [markdown]
# ### Axis-aligned maps copy tiles directly

# %%
target = gridxform.Grid.create_float(0.0)
gridxform.GridTransformer(translate=(8.0, 0.0, -16.0)).transform_grid(source, target)
print(target.active_tile_count(), target.leaf_count())

# %% [markdown]
# ### Resample into the index space of a coarser grid

# %%
coarse = gridxform.Grid.create_float(0.0)
coarse.transform = gridxform.Transform.create_linear_transform(2.0)
gridxform.resample_to_match(source, coarse, 'box', debug=True)
print(coarse.eval_active_voxel_dim())

# %% [markdown]
# ### Build and decompose affine matrices

# %%
matrix, inverse = gridxform.affine_matrix(
    pivot=(1.0, 2.0, 3.0), scale=(1.0, 2.0, 3.0), rotate=(0.1, 0.2, 0.3), translate=5.0)
print(np.allclose(matrix @ inverse, np.eye(4)))
success, scale, rotate, translate = gridxform.decompose(
    gridxform.affine_matrix(scale=(1.0, -2.0, 3.0), rotate=(0.1, 0.2, 0.3))[0])
print(success, scale, rotate, translate)

# %% [markdown]
# ### Sample a grid at arbitrary points

# %%
points = np.random.default_rng(0).uniform(0.0, 40.0, (5, 3))
for name in gridxform.SAMPLERS:
  values, active = gridxform._get_sampler(name).sample(source, points)
  print(name, values.round(3), active)
