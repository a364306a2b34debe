from typing import TYPE_CHECKING, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from ..analyzer.base import ClosureAnalyzer


class AppConfigModel(BaseModel):
    """Defaults picked up by a Serializer when it is constructed.

    Attributes:
        ANALYZER: Strategy used to analyze closures. "tree" parses the whole
            source file and is the more accurate one; "token" only scans the
            closure's lines and is faster.
        SIGNING_KEY: Key for HMAC-SHA256 payload signatures. None disables
            signing and verification.
        PROTOCOL: Pickle protocol used by the byte codec.
    """

    model_config = ConfigDict(validate_assignment=True)

    ANALYZER: Literal["tree", "token"] = "tree"
    SIGNING_KEY: Optional[str] = None
    PROTOCOL: int = 4


class ConfigModel(BaseModel):

    model_config = ConfigDict(validate_assignment=True)

    APP: AppConfigModel = Field(default_factory=AppConfigModel)

    def analyzer(self) -> "ClosureAnalyzer":
        """Build an instance of the configured analyzer strategy."""

        from ..analyzer import TokenAnalyzer, TreeAnalyzer

        if self.APP.ANALYZER == "token":
            return TokenAnalyzer()

        return TreeAnalyzer()
