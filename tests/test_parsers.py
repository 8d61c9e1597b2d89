# -*- coding: utf-8 -*-
"""
tests/test_parsers.py
推文 JSON -> Post：坐标、geo（顺序相反）、place 外接框、作者字段；坏数据返回 None。
"""

import json

from geohub.models import GeoPoint
from geohub.parsers.tweet_json import parse_line, parse_post

USER = {"id": 7, "name": "Zoe", "lang": "en", "location": " Boston ", "utc_offset": -18000, "time_zone": "EST"}


def test_coordinates_are_lon_lat():
    post = parse_post({"id": 1, "coordinates": {"coordinates": [-75.0, 40.0]}, "user": USER})
    assert post.coordinates == GeoPoint(lat=40.0, lon=-75.0)
    assert post.place is None


def test_geo_field_is_lat_lon():
    post = parse_post({"id": 1, "geo": {"coordinates": [40.0, -75.0]}, "user": USER})
    assert post.coordinates == GeoPoint(lat=40.0, lon=-75.0)


def test_place_bounding_box():
    post = parse_post({
        "id": 2,
        "place": {
            "full_name": "Manhattan, NY",
            "country_code": "US",
            "bounding_box": {"coordinates": [[[-74.0, 40.6], [-73.9, 40.6], [-73.9, 40.8], [-74.0, 40.8]]]},
        },
        "user": USER,
    })
    assert post.coordinates is None
    assert post.place.full_name == "Manhattan, NY"
    ring = post.place.bounding_box[0]
    assert ring[0] == GeoPoint(lat=40.6, lon=-74.0)
    assert ring[-1] == GeoPoint(lat=40.8, lon=-74.0)


def test_author_fields():
    post = parse_post({"id_str": "99", "user": {**USER, "utc_offset": None, "time_zone": ""}})
    assert post.id == 99
    a = post.author
    assert (a.id, a.name, a.lang, a.location) == (7, "Zoe", "en", "Boston")
    assert a.utc_offset is None
    assert a.timezone is None


def test_out_of_range_coordinates_are_ignored():
    post = parse_post({"id": 3, "coordinates": {"coordinates": [-200.0, 40.0]}, "user": USER})
    assert post.coordinates is None


def test_missing_id_or_user():
    assert parse_post({"user": USER}) is None
    assert parse_post({"id": 1}) is None
    assert parse_post({"id": 1, "user": {"name": "no id"}}) is None
    assert parse_post(["not", "a", "dict"]) is None


def test_parse_line():
    assert parse_line("") is None
    assert parse_line("{not json") is None
    post = parse_line(json.dumps({"id": 5, "user": USER}) + "\n")
    assert post.id == 5
    assert post.coordinates is None and post.place is None


def test_huge_numbers_do_not_raise():
    # 超出 float 范围的整数坐标、Infinity 时区偏移：字段当作缺失
    post = parse_line(json.dumps({
        "id": 1,
        "coordinates": {"coordinates": [10 ** 400, 40]},
        "user": {"id": 1, "name": "a"},
    }))
    assert post.id == 1
    assert post.coordinates is None

    post = parse_line('{"id": 2, "user": {"id": 2, "name": "b", "utc_offset": Infinity}}')
    assert post.author.utc_offset is None


def test_malformed_bounding_box_rings_are_skipped():
    good = [[-74.0, 40.6], [-73.9, 40.8]]
    post = parse_post({
        "id": 4,
        "place": {"full_name": "x", "bounding_box": {"coordinates": [5, "ring", None, good]}},
        "user": USER,
    })
    assert post.place.bounding_box == [[GeoPoint(lat=40.6, lon=-74.0), GeoPoint(lat=40.8, lon=-73.9)]]

    post = parse_post({"id": 5, "place": {"bounding_box": {"coordinates": 5}}, "user": USER})
    assert post.place.bounding_box == []


def test_deeply_nested_json_is_rejected():
    assert parse_line("[" * 100000 + "]" * 100000) is None
