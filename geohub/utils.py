# -*- coding: utf-8 -*-
"""
utils.py
通用工具：
- 用户地点文本的规范化 + 词干化（作为分类特征）
"""

import re
import unicodedata
from functools import lru_cache
from typing import Optional

import snowballstemmer

# 按英文调校的 Snowball 家族算法
STEMMER_ALGORITHM = "porter"

_RE_SPACES = re.compile(r"\s+")


@lru_cache(maxsize=1)
def get_stemmer():
    """
    进程内只创建一次词干器。
    main 启动时会先调用一次，之后每次调用都只是取缓存。
    """
    return snowballstemmer.stemmer(STEMMER_ALGORITHM)


def _letters_only(s: str) -> str:
    # 保留任何语言的字母 (L*) 和空白分隔符 (Z*)，其它一律换成空格
    return "".join(
        ch if unicodedata.category(ch)[0] in ("L", "Z") else " "
        for ch in s
    )


def normalize_location(location: Optional[str]) -> Optional[str]:
    """
    把用户自填的地点字符串变成可做类别特征的词干形式。

    例：
        "New York!!"  -> "new york"
        "new   york"  -> "new york"
        "" / None / "!!!" -> None

    空结果返回 None 而不是 ""，入库时要能区分“没有”和“空标签”。
    """
    if not location:
        return None

    s = _letters_only(location)
    s = _RE_SPACES.sub(" ", s)
    s = s.lower().strip()
    if not s:
        return None

    stemmer = get_stemmer()
    return " ".join(stemmer.stemWord(w) for w in s.split(" "))
