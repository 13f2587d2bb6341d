"""Gantry terminal monitor — Rich views over run reports and the Run Ledger.

Modules
-------
renderer
    ``RunRenderer`` turns ``RunReport``, execution plans, run history and
    artifact listings into Rich renderables, and prints one line per
    ``TaskEvent`` while a run is in progress.
"""
