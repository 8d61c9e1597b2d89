# -*- coding: utf-8 -*-
"""
推文 JSON 解析器（推特 v1.1 status 格式）

流式客户端投递的每条事件形如：
{
    "id": 1234567890,
    "coordinates": {"type": "Point", "coordinates": [lon, lat]},   # 可选
    "geo": {"type": "Point", "coordinates": [lat, lon]},           # 可选，注意顺序相反
    "place": {                                                     # 可选
        "full_name": "Manhattan, NY",
        "country_code": "US",
        "bounding_box": {"type": "Polygon", "coordinates": [[[lon, lat], ...]]}
    },
    "user": {"id": 1, "name": "...", "lang": "en", "location": "New York, NY",
             "utc_offset": -18000, "time_zone": "Eastern Time (US & Canada)"}
}

解析失败不抛异常，返回 None（记一条日志）。
"""

import json
import logging
from typing import Any, Dict, List, Optional

from geohub.models import Author, GeoPoint, Place, Post

logger = logging.getLogger(__name__)


def _int_or_none(v: Any) -> Optional[int]:
    if v is None or v == "":
        return None
    try:
        return int(v)
    except (TypeError, ValueError, OverflowError):
        return None


def _str_or_none(v: Any) -> Optional[str]:
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _lonlat(pair: Any) -> Optional[GeoPoint]:
    """[lon, lat] -> GeoPoint；格式不对返回 None"""
    try:
        lon, lat = float(pair[0]), float(pair[1])
    except (TypeError, ValueError, OverflowError, IndexError, KeyError):
        return None
    if not (-180.0 <= lon <= 180.0 and -90.0 <= lat <= 90.0):
        return None
    return GeoPoint(lat=lat, lon=lon)


def parse_coordinates(item: Dict) -> Optional[GeoPoint]:
    # 方式1: GeoJSON 的 coordinates 字段（lon, lat）
    coords = item.get("coordinates")
    if isinstance(coords, dict) and coords.get("coordinates") is not None:
        return _lonlat(coords["coordinates"])

    # 方式2: 旧的 geo 字段（lat, lon）
    geo = item.get("geo")
    if isinstance(geo, dict) and geo.get("coordinates") is not None:
        pair = geo["coordinates"]
        try:
            return _lonlat([pair[1], pair[0]])
        except (TypeError, IndexError, KeyError):
            return None

    return None


def parse_place(item: Dict) -> Optional[Place]:
    place = item.get("place")
    if not isinstance(place, dict):
        return None

    rings: List[List[GeoPoint]] = []
    bbox = place.get("bounding_box")
    raw_rings = bbox.get("coordinates") if isinstance(bbox, dict) else None
    if not isinstance(raw_rings, (list, tuple)):
        raw_rings = []
    for raw_ring in raw_rings:
        # 形状不对的环整段跳过
        if not isinstance(raw_ring, (list, tuple)):
            continue
        ring = [p for p in (_lonlat(pair) for pair in raw_ring) if p is not None]
        if ring:
            rings.append(ring)

    return Place(
        full_name=place.get("full_name") or "",
        country_code=place.get("country_code") or "",
        bounding_box=rings,
    )


def parse_author(user: Dict) -> Optional[Author]:
    author_id = _int_or_none(user.get("id") if user.get("id") is not None else user.get("id_str"))
    if author_id is None:
        return None
    return Author(
        id=author_id,
        name=user.get("name") or user.get("screen_name") or "",
        lang=_str_or_none(user.get("lang")),
        location=_str_or_none(user.get("location")),
        utc_offset=_int_or_none(user.get("utc_offset")),
        timezone=_str_or_none(user.get("time_zone")),
    )


def parse_post(item: Any) -> Optional[Post]:
    """
    把一条事件 dict 转成 Post；缺 id 或缺作者的事件返回 None。
    """
    if not isinstance(item, dict):
        return None

    post_id = _int_or_none(item.get("id") if item.get("id") is not None else item.get("id_str"))
    if post_id is None:
        logger.debug("[tweet_parser] event without id, skipped")
        return None

    user = item.get("user")
    author = parse_author(user) if isinstance(user, dict) else None
    if author is None:
        logger.debug("[tweet_parser] post %s without usable user, skipped", post_id)
        return None

    return Post(
        id=post_id,
        author=author,
        coordinates=parse_coordinates(item),
        place=parse_place(item),
    )


def parse_line(line: str) -> Optional[Post]:
    """JSONL 的一行 -> Post；空行 / 坏 JSON 返回 None"""
    line = line.strip()
    if not line:
        return None
    try:
        obj = json.loads(line)
    except (ValueError, RecursionError) as e:
        logger.warning("[tweet_parser] bad json line: %s", e)
        return None
    return parse_post(obj)
