# -*- coding: utf-8 -*-
"""
models.py
定义推文（Post）与作者（Author）数据模型。
字段与 storage.py 的建表语句一一对应：
- author: id, name, lang, location, normalized_location, utc_offset, timezone
- post:   id, lat, lon, country, author_id
"""

from dataclasses import dataclass, field
from typing import List, Optional

# 源平台用 -1 表示“时区偏移未知”，入库前必须翻译成 NULL
UTC_OFFSET_UNKNOWN = -1


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lon: float


@dataclass
class Place:
    # 地点名称，仅供日志/调试
    full_name: str = ""
    country_code: str = ""

    # 多边形环列表，每个环是一串点；推特的 place 一般只有一个矩形环
    bounding_box: List[List[GeoPoint]] = field(default_factory=list)


@dataclass
class Author:
    # 平台上稳定的用户ID（主键）
    id: int

    # 显示名，不参与学习
    name: str

    lang: Optional[str] = None

    # 用户自填的地点原文，入库时会另存词干化版本
    location: Optional[str] = None

    # 秒；None 或 UTC_OFFSET_UNKNOWN 都表示“没有值”，0 是合法值
    utc_offset: Optional[int] = None
    timezone: Optional[str] = None


@dataclass
class Post:
    id: int
    author: Author

    # 精确坐标优先；没有时退回 place 的外接框
    coordinates: Optional[GeoPoint] = None
    place: Optional[Place] = None
