# -*- coding: utf-8 -*-
"""
公共夹具：
- resolver：只认识美国、法国两个矩形的解析器
- make_author / make_post：快速构造测试数据
"""

from typing import Optional

import pytest

from geohub.geography import RegionResolver
from geohub.models import Author, GeoPoint, Place, Post


@pytest.fixture
def resolver():
    return RegionResolver.from_mapping({
        "regions": [
            {"country": "US", "boxes": [[-124.8, 24.5, -66.9, 49.0]]},
            {"country": "FR", "boxes": [[-4.8, 42.3, 8.2, 51.1]]},
        ]
    })


@pytest.fixture
def make_author():
    def _make(author_id: int = 1, **kw) -> Author:
        fields = dict(
            name=f"user{author_id}",
            lang="en",
            location="New York, NY",
            utc_offset=-18000,
            timezone="EST",
        )
        fields.update(kw)
        return Author(id=author_id, **fields)
    return _make


@pytest.fixture
def make_post(make_author):
    def _make(
        post_id: int,
        author_id: int = 1,
        lat: Optional[float] = None,
        lon: Optional[float] = None,
        place: Optional[Place] = None,
        author: Optional[Author] = None,
    ) -> Post:
        coords = GeoPoint(lat=lat, lon=lon) if lat is not None and lon is not None else None
        return Post(
            id=post_id,
            author=author or make_author(author_id),
            coordinates=coords,
            place=place,
        )
    return _make
