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

"""Dtype-aware numerical tolerances for point location.

Barycentric weights of a point lying exactly on a face shared by two cells
come out as tiny negative numbers for one of the cells, with a magnitude set
by the floating-point precision of the coordinates. A strict ``[0, 1]`` test
would therefore miss such points in both cells. The helpers here derive the
slack of the containment band from the dtype alone:

==========  ========================  =====================================
dtype       ``strict_slack``          ``safe_eps``
==========  ========================  =====================================
float32     ~1.9e-6 (16 * eps)        ~3.3e-10
float64     ~3.6e-15 (16 * eps)       ~1.2e-77
==========  ========================  =====================================
"""

import torch

_STRICT_SLACK_ULPS = 16.0


def safe_eps(dtype: torch.dtype) -> float:
    """Return a dtype-aware safe epsilon for preventing division by zero.

    Parameters
    ----------
    dtype : torch.dtype
        The floating-point dtype (e.g. ``torch.float32``,
        ``torch.float64``).

    Returns
    -------
    float
        A small positive floor value equal to
        ``torch.finfo(dtype).tiny ** 0.25``. Its reciprocal squared does not
        overflow.
    """
    return torch.finfo(dtype).tiny ** 0.25


def strict_slack(dtype: torch.dtype) -> float:
    """Return the containment slack used when searching outside is disabled.

    Parameters
    ----------
    dtype : torch.dtype
        The floating-point dtype of the barycentric weights.

    Returns
    -------
    float
        ``16 * torch.finfo(dtype).eps``.
    """
    return _STRICT_SLACK_ULPS * torch.finfo(dtype).eps


def containment_band(
    search_outside: bool,
    search_outside_tolerance: float,
    dtype: torch.dtype,
) -> tuple[float, float]:
    """Return the ``(lower, upper)`` bounds barycentric weights must satisfy.

    Parameters
    ----------
    search_outside : bool
        Whether points marginally outside a cell are accepted.
    search_outside_tolerance : float
        Slack of the band when ``search_outside`` is enabled.
    dtype : torch.dtype
        Floating-point dtype of the weights.

    Returns
    -------
    tuple[float, float]
        ``(-eps, 1 + eps)``, where ``eps`` is ``search_outside_tolerance`` or
        :func:`strict_slack` depending on ``search_outside``.

    Raises
    ------
    ValueError
        If ``search_outside_tolerance`` is negative.
    """
    if search_outside_tolerance < 0:
        raise ValueError(
            f"search_outside_tolerance must be non-negative, got {search_outside_tolerance=}"
        )
    eps = strict_slack(dtype)
    if search_outside:
        eps = max(eps, search_outside_tolerance)
    return -eps, 1.0 + eps
