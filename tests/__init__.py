# -*- coding: utf-8 -*-
"""
PicNexus 测试模块
"""
