"""
Codification Module - map extracted line items to canonical item codes

Two-tier resolution with a learning loop:
1. Fast Pass (no network): normalized name -> alias index (exact, then fuzzy)
2. Smart Pass (on demand): model-assisted suggestions for what is left
3. Confirmation: a human decision writes an alias, so the same name
   resolves in the Fast Pass next time

Example flow:
- "Site Purchase Price" -> no alias -> pending_review
- Smart Pass -> suggests costs.siteAcquisition (0.82)
- User confirms -> alias "site purchase price" -> costs.siteAcquisition
- Next document: "Site Purchase Price" -> exact alias hit (1.0), no model call
"""

from packages.domain.codification.alias_index import AliasIndex
from packages.domain.codification.normalization import normalize_alias
from packages.domain.codification.schemas import (
    AliasMatch,
    AliasSource,
    CodifiedItem,
    DataType,
    ExtractedItemInput,
    MappingStats,
    MappingStatus,
    MatchType,
)

__all__ = [
    'AliasIndex',
    'normalize_alias',
    'AliasMatch',
    'AliasSource',
    'CodifiedItem',
    'DataType',
    'ExtractedItemInput',
    'MappingStats',
    'MappingStatus',
    'MatchType',
]
