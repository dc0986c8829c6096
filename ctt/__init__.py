# -*- coding: utf-8 -*-
"""
CTT record keeping: local database and the local-first sync engine.
"""

__version__ = '2.0.0'
