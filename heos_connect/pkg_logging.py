#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
The "heos_connect" logger, shared by every module of the package. Frames and datagrams
are logged at DEBUG, connection lifecycle at INFO, and protocol anomalies and failing
callbacks at WARNING.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__.rsplit('.', 1)[0])
