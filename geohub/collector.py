from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import yaml

from geohub.geography import WORLD_BOX, in_box
from geohub.parsers.tweet_json import parse_line
from geohub.storage import effective_point

logger = logging.getLogger(__name__)

ROOT = Path(__file__).resolve().parents[1]

# -------------------- 单源：JSONL 回放 --------------------

async def _replay_jsonl(
    src: dict,
    queue: "asyncio.Queue",
    bounding_box: Sequence[float] = WORLD_BOX,
    root: Path = ROOT,
) -> int:
    """
    逐行读取 JSONL 文件（每行一条推文事件），解析后放入队列。
    - interval_sec: 两条事件之间的间隔，模拟流速；0 表示尽快
    - follow: 读到文件末尾后继续等待新行（类似 tail -f），poll_sec 轮询
    - 坐标落在 bounding_box 外的推文直接跳过（与流式过滤框一致）
    返回放入队列的条数。
    """
    source_id = src.get("id", "")
    path = Path(src.get("path", ""))
    if not path.is_absolute():
        path = root / path
    interval = float(src.get("interval_sec", 0) or 0)
    follow = bool(src.get("follow", False))
    poll = float(src.get("poll_sec", 1.0) or 1.0)

    logger.info("[collector] jsonl %s <- %s (follow=%s)", source_id, path, follow)

    sent = 0
    try:
        # 坏字节替换成 U+FFFD，回放不中断
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            while True:
                line = f.readline()
                if not line:
                    if not follow:
                        break
                    await asyncio.sleep(poll)
                    continue

                post = parse_line(line)
                if post is None:
                    continue

                point = effective_point(post)
                if point is not None and not in_box(bounding_box, point.lon, point.lat):
                    logger.debug("[collector] %s post %s outside bounding box, skipped", source_id, post.id)
                    continue

                await queue.put(post)
                sent += 1

                if interval > 0:
                    await asyncio.sleep(interval)
    except FileNotFoundError:
        logger.error("[collector] %s file not found: %s", source_id, path)
    except asyncio.CancelledError:
        logger.info("[collector] %s cancelled after %d posts", source_id, sent)
        raise

    logger.info("[collector] %s finished, %d posts queued", source_id, sent)
    return sent

# -------------------- 总调度：读取 sources.yml 并启动任务 --------------------

def load_sources(path: Optional[Path] = None) -> List[Dict[str, Any]]:
    path = path or ROOT / "ops" / "sources.yml"
    try:
        with open(path, "r", encoding="utf-8") as f:
            return (yaml.safe_load(f) or {}).get("sources", []) or []
    except FileNotFoundError:
        logger.warning("[collector] %s not found, no sources", path)
        return []


async def run_collectors(
    queue: "asyncio.Queue",
    sources: Optional[List[Dict[str, Any]]] = None,
    bounding_box: Sequence[float] = WORLD_BOX,
    root: Path = ROOT,
) -> List[asyncio.Task]:
    """
    按 type 启动对应采集任务。目前只有 jsonl；其它类型跳过。
    """
    if sources is None:
        sources = load_sources()

    tasks: List[asyncio.Task] = []
    for src in sources:
        if not src.get("enabled", True):
            continue
        t = (src.get("type", "") or "").strip().lower()

        if t == "jsonl":
            tasks.append(asyncio.create_task(_replay_jsonl(src, queue, bounding_box, root)))
        else:
            logger.warning("[collector] unknown source type: %s (%s)", t, src.get("id"))

    logger.info("[collector] started %d collector tasks", len(tasks))
    return tasks
