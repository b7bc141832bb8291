"""Utilities shared by the mapper core and its tools.

This package hosts modules that do not depend on the estimator internals
(KPI logging, plotting).
"""
