"""Horae — story world-state tracking from annotated narrative turns.

Layout:
    temporal.py     Story dates: parsing, day deltas, relative labels
    delta.py        One turn's parsed annotation (frozen values + storage shape)
    parser.py       <horae> / <horaeevent> / <horaetable:…> → Delta
    state.py        Fold of all stored Deltas → State (items, NPCs, affection, agenda)
    tables.py       Lock-respecting table cell merges and replay
    summary.py      Compact state summary for the next prompt
    core.py         Horae orchestrator over a host's turn list
    transcript.py   Markdown-file transcript used by the CLI
"""
