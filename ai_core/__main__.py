# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the MobileOps project

import sys

from .cli import main

sys.exit(main())
