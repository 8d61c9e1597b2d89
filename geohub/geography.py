# -*- coding: utf-8 -*-
"""
geography.py
坐标 -> 国家代码。
- 任何带 resolve(lon, lat) 方法的对象都可以当解析器用（CountryResolver 协议）
- RegionResolver：从 ops/regions.yml 读取每个国家的经纬度矩形，按文件顺序第一个命中为准
- 找不到时返回 UNKNOWN_COUNTRY，调用方把它当作合法值入库
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple, Union

import yaml

from geohub.models import GeoPoint

logger = logging.getLogger(__name__)

UNKNOWN_COUNTRY = "UNKNOWN"

# (min_lon, min_lat, max_lon, max_lat)
Box = Tuple[float, float, float, float]

# 全世界；用作 collector 的默认过滤框
WORLD_BOX: Box = (-180.0, -90.0, 180.0, 90.0)


class CountryResolver(Protocol):
    def resolve(self, lon: float, lat: float) -> str:
        ...


def midpoint(a: GeoPoint, b: GeoPoint) -> GeoPoint:
    """两个点的算术平均（不是多边形质心）。"""
    return GeoPoint(lat=(a.lat + b.lat) / 2.0, lon=(a.lon + b.lon) / 2.0)


def in_box(box: Sequence[float], lon: float, lat: float) -> bool:
    min_lon, min_lat, max_lon, max_lat = box
    return min_lon <= lon <= max_lon and min_lat <= lat <= max_lat


def _parse_box(raw: Sequence[float]) -> Box:
    if len(raw) != 4:
        raise ValueError(f"box must have 4 numbers [min_lon, min_lat, max_lon, max_lat], got {raw!r}")
    min_lon, min_lat, max_lon, max_lat = (float(x) for x in raw)
    if min_lon > max_lon or min_lat > max_lat:
        raise ValueError(f"box corners out of order: {raw!r}")
    return (min_lon, min_lat, max_lon, max_lat)


class RegionResolver:
    """按矩形区域表解析国家。区域顺序即优先级（边境重叠时靠前的赢）。"""

    def __init__(self, regions: List[Tuple[str, List[Box]]]):
        self.regions = regions

    @classmethod
    def from_mapping(cls, data: Dict) -> "RegionResolver":
        regions: List[Tuple[str, List[Box]]] = []
        for item in (data or {}).get("regions", []) or []:
            code = (item.get("country") or "").strip().upper()
            if not code:
                raise ValueError(f"region without country code: {item!r}")
            boxes = [_parse_box(b) for b in item.get("boxes", []) or []]
            regions.append((code, boxes))
        return cls(regions)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "RegionResolver":
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        resolver = cls.from_mapping(data)
        logger.info("[geography] loaded %d regions from %s", len(resolver.regions), path)
        return resolver

    def resolve(self, lon: float, lat: float) -> str:
        for code, boxes in self.regions:
            for box in boxes:
                if in_box(box, lon, lat):
                    return code
        return UNKNOWN_COUNTRY


class FunctionResolver:
    """把一个普通函数 f(lon, lat) -> Optional[str] 包成解析器；返回空值时落到 UNKNOWN。"""

    def __init__(self, fn: Callable[[float, float], Optional[str]]):
        self.fn = fn

    def resolve(self, lon: float, lat: float) -> str:
        return self.fn(lon, lat) or UNKNOWN_COUNTRY
