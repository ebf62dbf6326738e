"""书库条目响应模型。"""
from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class Contributor(BaseModel):
    model_config = ConfigDict(extra="ignore")

    asin: Optional[str] = None
    name: Optional[str] = None


class SeriesRef(BaseModel):
    model_config = ConfigDict(extra="ignore")

    asin: Optional[str] = None
    title: Optional[str] = None
    sequence: Optional[str] = None


class LibraryItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    asin: str
    title: Optional[str] = None
    subtitle: Optional[str] = None
    authors: Optional[List[Contributor]] = None
    narrators: Optional[List[Contributor]] = None
    runtime_length_min: Optional[int] = None
    purchase_date: Optional[str] = None
    release_date: Optional[str] = None
    product_images: Optional[dict[str, str]] = None
    series: Optional[List[SeriesRef]] = None

    @property
    def cover_url(self) -> Optional[str]:
        """优先取最大尺寸的封面。"""
        if not self.product_images:
            return None
        sizes = sorted(self.product_images, key=lambda k: int(k) if k.isdigit() else 0)
        return self.product_images[sizes[-1]]

    @property
    def primary_series(self) -> Optional[SeriesRef]:
        """取第一个带标题的系列。"""
        return next((s for s in self.series or [] if s.title), None)


class LibraryPage(BaseModel):
    """GET /1.0/library 的单页响应。"""
    model_config = ConfigDict(extra="ignore")

    items: List[LibraryItem] = []
    total_results: Optional[int] = None
    response_groups: Optional[List[str]] = None
