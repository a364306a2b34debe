from .base import SERIALIZED_FIELDS, ClosureAnalyzer, ClosureRecord, Location
from .token import Token, TokenAnalyzer
from .tree import TreeAnalyzer
