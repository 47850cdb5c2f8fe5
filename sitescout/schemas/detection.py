from typing import Literal

from pydantic import BaseModel, Field


class WebsiteSignature(BaseModel):
    framework: str
    confidence: float = Field(ge=0.0, le=1.0)
    indicators: list[str] = []


class WebsiteAnalysis(BaseModel):
    url: str
    signatures: list[WebsiteSignature] = []
    is_static: bool = True
    requires_javascript: bool = False
    has_forms: bool = False
    has_infinite_scroll: bool = False
    recommended_scraper: Literal["http", "browser", "browser_stealth"] = "browser"
    recommended_strategy: Literal["static", "dynamic", "spa"] = "dynamic"

    @property
    def top(self) -> WebsiteSignature | None:
        return self.signatures[0] if self.signatures else None
