"""
Execution module.

Contains hedge entry/exit, order fill polling and instrument precision helpers.
"""
