"""
Document Registry module.

Controlled documents live in two external collections: authoring (work in
progress) and published (registry of record). This module projects both into
one DocumentRecord view, allocates document codes across them and drives the
Draft -> UnderReview -> Approved -> Published lifecycle, with Obsolete
reachable from any earlier state.
"""
