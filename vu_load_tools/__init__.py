#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
vu_load_tools
虚拟用户压测工具：分阶段用户、指标、断言和阈值
"""

__version__ = '0.1.0'
