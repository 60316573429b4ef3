"""
Transformation Registry Contract

Named transformation functions and their declared type. The set of types
is open: the registry may report types the engine has never heard of.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional


class TransformationTypes:
    """Well-known transformation type names"""
    GENERATOR = "generator"
    NULL_RETURNING = "null_returning"
    PASSTHROUGH = "passthrough"
    AGGREGATION = "aggregation"
    MERGE = "merge"
    SPLIT = "split"
    FANOUT = "fanout"
    SINK = "sink"


# Pass-through transformation used by auto-generated rules
DIRECT_MAPPING = "direct_mapping"


@dataclass
class TransformationInfo:
    name: str
    transformation_type: str
    is_valid: bool = True
    description: str = ""


class TransformationRegistry(ABC):
    """Abstract interface for the transformation service"""

    @abstractmethod
    def get_transformation(self, name: str) -> Optional[TransformationInfo]:
        """
        Look up a transformation by name

        Returns:
            TransformationInfo, or None when no such transformation exists
        """
        pass

    @abstractmethod
    def execute(self, name: str, value: Any, options: Optional[Dict[str, Any]] = None) -> Any:
        """Apply a named transformation to a single value"""
        pass
