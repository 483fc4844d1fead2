#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
python -m vu_load_tools
与 vu-load 命令相同
"""

from .cli import main

raise SystemExit(main())
