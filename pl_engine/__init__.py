"""
Top-level package for the Product Library recommendation and curation engine.

This package resolves a child's age in months to one age-range bucket,
selects diverse product picks across the need -> category -> product
taxonomy, and gates the curation workflow (draft -> published) behind
the publish rules.  The pure pieces (ranges, picks, gate, autopilot)
take explicit inputs; the taxonomy snapshot and the SQLite curation
store are thin adapters around them.  There are no side-effects on
import.
"""
