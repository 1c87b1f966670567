# SPDX-FileCopyrightText: Copyright (c) 2023 - 2026 NVIDIA CORPORATION & AFFILIATES.
# SPDX-FileCopyrightText: All rights reserved.
# SPDX-License-Identifier: Apache-2.0
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Bounding Volume Hierarchy (BVH) backing the locator's full scan.

The BVH is stored as flat tensors and built with the morton-code Linear BVH
(LBVH) algorithm in O(log N) Python iterations. It only prunes: a query gets
every cell whose (padded) box contains it, so a containment test over the
candidates is equivalent to a linear scan over all cells as long as the
padding covers the containment band.
"""

import torch
from tensordict import tensorclass

from meshprobe.spatial.curves import compute_morton_codes

# ---------------------------------------------------------------------------
# Leaf expansion helper
# ---------------------------------------------------------------------------


def _expand_leaf_hits(
    leaf_query_indices: torch.Tensor,
    leaf_node_indices: torch.Tensor,
    leaf_start: torch.Tensor,
    leaf_count: torch.Tensor,
    sorted_cell_order: torch.Tensor,
) -> tuple[torch.Tensor, torch.Tensor]:
    """Expand (query, leaf_node) hits into one (query, cell) pair per leaf cell.

    Returns
    -------
    tuple[torch.Tensor, torch.Tensor]
        ``(expanded_query_indices, expanded_cell_indices)``
    """
    starts = leaf_start[leaf_node_indices]  # (n_hits,)
    counts = leaf_count[leaf_node_indices]  # (n_hits,)
    total = int(counts.sum())
    device = leaf_query_indices.device

    if total == 0:
        empty = torch.empty(0, dtype=torch.long, device=device)
        return empty, empty

    expanded_queries = torch.repeat_interleave(leaf_query_indices, counts)

    ### Position-within-leaf offsets: [0,1,...,c0-1, 0,1,...,c1-1, ...]
    cum = counts.cumsum(0)
    offsets_within = torch.arange(total, dtype=torch.long, device=device)
    offsets_within = offsets_within - torch.repeat_interleave(cum - counts, counts)

    sorted_positions = torch.repeat_interleave(starts, counts) + offsets_within
    return expanded_queries, sorted_cell_order[sorted_positions]


def _segment_bounds(
    seg_starts: torch.Tensor,
    seg_sizes: torch.Tensor,
    sorted_aabb_min: torch.Tensor,
    sorted_aabb_max: torch.Tensor,
) -> tuple[torch.Tensor, torch.Tensor]:
    """Union of the boxes of contiguous segments of the morton-sorted cells.

    Returns ``(aabb_min, aabb_max)``, each of shape ``(n_segments, D)``.
    """
    device = seg_starts.device
    D = sorted_aabb_min.shape[1]
    dtype = sorted_aabb_min.dtype
    n_segs = len(seg_starts)

    seg_ids = torch.repeat_interleave(
        torch.arange(n_segs, dtype=torch.long, device=device), seg_sizes
    )
    cum = seg_sizes.cumsum(0)
    offsets = torch.arange(int(cum[-1]), dtype=torch.long, device=device)
    offsets = offsets - torch.repeat_interleave(cum - seg_sizes, seg_sizes)
    cell_pos = torch.repeat_interleave(seg_starts, seg_sizes) + offsets

    seg_min = torch.full((n_segs, D), float("inf"), dtype=dtype, device=device)
    seg_max = torch.full((n_segs, D), float("-inf"), dtype=dtype, device=device)
    exp_ids = seg_ids.unsqueeze(1).expand(-1, D)
    seg_min.scatter_reduce_(0, exp_ids, sorted_aabb_min[cell_pos], reduce="amin")
    seg_max.scatter_reduce_(0, exp_ids, sorted_aabb_max[cell_pos], reduce="amax")
    return seg_min, seg_max


# ---------------------------------------------------------------------------
# BVH tensorclass
# ---------------------------------------------------------------------------


@tensorclass
class BVH:
    """Bounding Volume Hierarchy over the cells of a mesh.

    Each internal node has exactly two children; leaves store a contiguous
    range of cells in morton order.

    Attributes
    ----------
    node_aabb_min, node_aabb_max : torch.Tensor
        Box corners per node, shape ``(n_nodes, 3)``.
    node_left_child, node_right_child : torch.Tensor
        Children of internal nodes, shape ``(n_nodes,)``, ``-1`` for leaves.
    leaf_start : torch.Tensor
        Start into ``sorted_cell_order`` per leaf, ``-1`` for internal nodes.
    leaf_count : torch.Tensor
        Cells per leaf, ``0`` for internal nodes.
    sorted_cell_order : torch.Tensor
        Morton-sorted permutation of cell indices, shape ``(n_cells,)``.

    Examples
    --------
    >>> bvh = BVH.from_cells(points, cells, padding=0.5)  # doctest: +SKIP
    >>> query_idx, cell_idx = bvh.find_candidate_pairs(query_points)  # doctest: +SKIP
    """

    node_aabb_min: torch.Tensor  # (n_nodes, n_spatial_dims)
    node_aabb_max: torch.Tensor  # (n_nodes, n_spatial_dims)
    node_left_child: torch.Tensor  # (n_nodes,), int64, -1 for leaves
    node_right_child: torch.Tensor  # (n_nodes,), int64, -1 for leaves
    leaf_start: torch.Tensor  # (n_nodes,), int64, -1 for internal
    leaf_count: torch.Tensor  # (n_nodes,), int64, 0 for internal
    sorted_cell_order: torch.Tensor  # (n_cells,), int64

    @property
    def n_nodes(self) -> int:
        return self.node_aabb_min.shape[0]

    @property
    def n_spatial_dims(self) -> int:
        return self.node_aabb_min.shape[1]

    @property
    def device(self) -> torch.device:
        return self.node_aabb_min.device

    @classmethod
    def from_cells(
        cls,
        points: torch.Tensor,
        cells: torch.Tensor,
        padding: float = 0.0,
        leaf_size: int = 8,
    ) -> "BVH":
        """Construct a BVH over simplicial cells using morton-code LBVH.

        Parameters
        ----------
        points : torch.Tensor
            Node coordinates, shape ``(n_points, D)``.
        cells : torch.Tensor
            Cell connectivity, shape ``(n_cells, V)``.
        padding : float, optional
            Every cell box is grown by ``padding`` times its own largest
            extent on each side. A point whose barycentric weights all lie in
            ``[-eps, 1 + eps]`` stays within ``V * eps`` cell extents of the
            cell box, so ``padding >= V * eps`` keeps such points inside.
        leaf_size : int, optional
            Maximum number of cells per leaf node.

        Returns
        -------
        BVH
            Constructed BVH ready for queries.

        Raises
        ------
        ValueError
            If ``leaf_size < 1`` or ``padding < 0``.
        """
        if leaf_size < 1:
            raise ValueError(f"leaf_size must be >= 1, got {leaf_size=!r}")
        if padding < 0:
            raise ValueError(f"padding must be non-negative, got {padding=!r}")

        n_cells = cells.shape[0]
        D = points.shape[1]
        device = points.device
        dtype = points.dtype

        if n_cells == 0:
            empty_long = torch.empty(0, dtype=torch.long, device=device)
            return cls(
                node_aabb_min=torch.empty((0, D), dtype=dtype, device=device),
                node_aabb_max=torch.empty((0, D), dtype=dtype, device=device),
                node_left_child=empty_long,
                node_right_child=empty_long,
                leaf_start=empty_long,
                leaf_count=empty_long,
                sorted_cell_order=empty_long,
                batch_size=torch.Size([]),
            )

        ### Per-cell padded boxes, sorted by the morton code of the centroids
        cell_vertices = points[cells]  # (n_cells, V, D)
        cell_aabb_min = cell_vertices.min(dim=1).values
        cell_aabb_max = cell_vertices.max(dim=1).values
        pad = padding * (cell_aabb_max - cell_aabb_min).amax(dim=1, keepdim=True)
        cell_aabb_min = cell_aabb_min - pad
        cell_aabb_max = cell_aabb_max + pad

        sorted_order = compute_morton_codes(cell_vertices.mean(dim=1)).argsort(stable=True)
        sorted_aabb_min = cell_aabb_min[sorted_order]
        sorted_aabb_max = cell_aabb_max[sorted_order]

        ### Node storage, tight upper bound from midpoint splits
        min_cells_per_leaf = max(1, (leaf_size + 1) // 2)
        max_leaves = (n_cells + min_cells_per_leaf - 1) // min_cells_per_leaf
        max_nodes = max(1, 2 * max_leaves - 1)

        node_aabb_min_buf = torch.full((max_nodes, D), float("inf"), dtype=dtype, device=device)
        node_aabb_max_buf = torch.full((max_nodes, D), float("-inf"), dtype=dtype, device=device)
        node_left_child = torch.full((max_nodes,), -1, dtype=torch.long, device=device)
        node_right_child = torch.full((max_nodes,), -1, dtype=torch.long, device=device)
        leaf_start_buf = torch.full((max_nodes,), -1, dtype=torch.long, device=device)
        leaf_count_buf = torch.zeros(max_nodes, dtype=torch.long, device=device)

        # ---------------------------------------------------------------
        # Phase 1: top-down construction, one iteration per tree level
        # ---------------------------------------------------------------
        seg_starts = torch.tensor([0], dtype=torch.long, device=device)
        seg_ends = torch.tensor([n_cells], dtype=torch.long, device=device)
        seg_node_ids = torch.tensor([0], dtype=torch.long, device=device)
        node_count = 1
        internal_nodes_per_level: list[torch.Tensor] = []

        while len(seg_starts) > 0:
            seg_sizes = seg_ends - seg_starts
            is_leaf_seg = seg_sizes <= leaf_size

            leaf_indices = torch.where(is_leaf_seg)[0]
            if len(leaf_indices) > 0:
                leaf_nids = seg_node_ids[leaf_indices]
                l_starts = seg_starts[leaf_indices]
                l_sizes = seg_sizes[leaf_indices]
                leaf_start_buf[leaf_nids] = l_starts
                leaf_count_buf[leaf_nids] = l_sizes
                seg_min, seg_max = _segment_bounds(
                    l_starts, l_sizes, sorted_aabb_min, sorted_aabb_max
                )
                node_aabb_min_buf[leaf_nids] = seg_min
                node_aabb_max_buf[leaf_nids] = seg_max

            internal_indices = torch.where(~is_leaf_seg)[0]
            if len(internal_indices) == 0:
                break

            int_starts = seg_starts[internal_indices]
            int_ends = seg_ends[internal_indices]
            int_node_ids = seg_node_ids[internal_indices]
            midpoints = int_starts + (int_ends - int_starts) // 2

            n_internal = len(internal_indices)
            left_ids = node_count + torch.arange(n_internal, dtype=torch.long, device=device) * 2
            right_ids = left_ids + 1
            node_count += 2 * n_internal

            node_left_child[int_node_ids] = left_ids
            node_right_child[int_node_ids] = right_ids
            internal_nodes_per_level.append(int_node_ids)

            seg_starts = torch.cat([int_starts, midpoints])
            seg_ends = torch.cat([midpoints, int_ends])
            seg_node_ids = torch.cat([left_ids, right_ids])

        # ---------------------------------------------------------------
        # Phase 2: bottom-up box propagation, deepest level first
        # ---------------------------------------------------------------
        for level_node_ids in reversed(internal_nodes_per_level):
            left = node_left_child[level_node_ids]
            right = node_right_child[level_node_ids]
            node_aabb_min_buf[level_node_ids] = torch.minimum(
                node_aabb_min_buf[left], node_aabb_min_buf[right]
            )
            node_aabb_max_buf[level_node_ids] = torch.maximum(
                node_aabb_max_buf[left], node_aabb_max_buf[right]
            )

        return cls(
            node_aabb_min=node_aabb_min_buf[:node_count],
            node_aabb_max=node_aabb_max_buf[:node_count],
            node_left_child=node_left_child[:node_count],
            node_right_child=node_right_child[:node_count],
            leaf_start=leaf_start_buf[:node_count],
            leaf_count=leaf_count_buf[:node_count],
            sorted_cell_order=sorted_order,
            batch_size=torch.Size([]),
        )

    def find_candidate_pairs(
        self,
        query_points: torch.Tensor,
        aabb_tolerance: float = 0.0,
    ) -> tuple[torch.Tensor, torch.Tensor]:
        """Find every (query, cell) pair whose cell box contains the query point.

        All queries descend the tree together; the outer loop runs once per
        tree level and there are no Python loops over points.

        Parameters
        ----------
        query_points : torch.Tensor
            Points to query, shape ``(n_queries, n_spatial_dims)``.
        aabb_tolerance : float, optional
            Absolute slack added to every box test.

        Returns
        -------
        tuple[torch.Tensor, torch.Tensor]
            ``(query_indices, cell_indices)``, both of shape ``(n_pairs,)``.
        """
        if query_points.ndim != 2:
            raise ValueError(
                f"query_points must be 2D (n_queries, n_spatial_dims), got "
                f"{query_points.ndim}D with shape {tuple(query_points.shape)}"
            )
        if not query_points.is_floating_point():
            raise TypeError(
                f"query_points must be a floating-point tensor (got {query_points.dtype=!r})"
            )
        if self.n_nodes > 0 and query_points.shape[1] != self.n_spatial_dims:
            raise ValueError(
                f"query_points has {query_points.shape[1]} spatial dims, but "
                f"BVH has {self.n_spatial_dims}"
            )

        n_queries = query_points.shape[0]
        dev = query_points.device
        empty = torch.empty(0, dtype=torch.long, device=dev)
        if self.n_nodes == 0 or n_queries == 0:
            return empty, empty

        current_query_indices = torch.arange(n_queries, dtype=torch.long, device=dev)
        current_node_indices = torch.zeros(n_queries, dtype=torch.long, device=dev)
        query_parts: list[torch.Tensor] = []
        cell_parts: list[torch.Tensor] = []

        while len(current_query_indices) > 0:
            batch_points = query_points[current_query_indices]
            inside = (
                (batch_points >= self.node_aabb_min[current_node_indices] - aabb_tolerance)
                & (batch_points <= self.node_aabb_max[current_node_indices] + aabb_tolerance)
            ).all(dim=1)
            hit_query = current_query_indices[inside]
            hit_node = current_node_indices[inside]
            if len(hit_query) == 0:
                break

            is_leaf = self.leaf_count[hit_node] > 0
            if is_leaf.any():
                expanded_q, expanded_c = _expand_leaf_hits(
                    hit_query[is_leaf],
                    hit_node[is_leaf],
                    self.leaf_start,
                    self.leaf_count,
                    self.sorted_cell_order,
                )
                query_parts.append(expanded_q)
                cell_parts.append(expanded_c)

            ### Internal-node hits descend to both children
            int_query = hit_query[~is_leaf]
            int_node = hit_node[~is_leaf]
            if len(int_query) == 0:
                break
            current_query_indices = torch.cat([int_query, int_query])
            current_node_indices = torch.cat(
                [self.node_left_child[int_node], self.node_right_child[int_node]]
            )

        if not query_parts:
            return empty, empty
        return torch.cat(query_parts), torch.cat(cell_parts)
