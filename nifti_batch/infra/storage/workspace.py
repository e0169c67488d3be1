"""本地存储管理：解析任务文件路径、写入完成标记并把下载流落盘。"""

from __future__ import annotations

import hashlib
import re
from pathlib import Path
from typing import Iterable

_SEPARATOR_RE = re.compile(r"[\\/]")
NIFTI_SUFFIX = ".nii"


def sha256_file(path: Path) -> str:
    """流式计算文件 SHA-256 摘要。"""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        # 分块读取大体积影像，避免一次性加载导致内存峰值过高。
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def strip_nifti_suffix(path: Path) -> str:
    """去掉 .nii 后缀；处理脚本约定传入不带扩展名的路径。"""
    text = str(path)
    if text.endswith(NIFTI_SUFFIX):
        return text[: -len(NIFTI_SUFFIX)]
    return text


def sanitize_filename(filename: str) -> str:
    """去掉服务端文件名中的目录部分，其余字符按逻辑名原样保留。"""
    # 同时按正反斜杠切分，防止路径穿越写出输出目录。
    clean_name = _SEPARATOR_RE.split(filename.replace("\x00", ""))[-1].strip()
    if clean_name in {"", ".", ".."}:
        return "download.bin"
    return clean_name


def save_stream_to_file(chunks: Iterable[bytes], target: Path) -> Path:
    """把字节流写入目标文件，已存在时覆盖。"""
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("wb") as handle:
        for chunk in chunks:
            handle.write(chunk)
    return target


class LocalStorage:
    """计算节点本地存储布局，任务输入输出均位于同一根目录。"""
    def __init__(self, root: Path, executables_root: Path) -> None:
        self._root = root
        self._executables_root = executables_root

    @property
    def root(self) -> Path:
        return self._root

    def local_path(self, name: str) -> Path:
        return self._root / name

    def executable_path(self, relative: str) -> Path:
        return self._executables_root / relative

    def ensure_root(self) -> Path:
        self._root.mkdir(parents=True, exist_ok=True)
        return self._root

    def write_completion_marker(self, file_name: str, content: str = "done") -> Path:
        """写入 merge 阶段的完成标记文件。"""
        path = self.ensure_root() / file_name
        path.write_text(content, encoding="utf-8")
        return path
