"""
存储后端

Store 协议描述迁移核心所需的全部能力，LocalStore 以本地目录实现。
路径一律使用 '/' 分隔的相对路径。
"""

import os
import shutil
from pathlib import Path
from typing import Dict, Iterator, Protocol, runtime_checkable

from loguru import logger

from .errors import StoreError, StoreIOError, StoreNotFoundError
from .models import FileRecord


@runtime_checkable
class Store(Protocol):
    """存储能力接口"""

    name: str

    def exists(self, path: str) -> bool: ...

    def read(self, path: str) -> bytes: ...

    def write(self, path: str, data: bytes) -> None: ...

    def delete(self, path: str) -> None: ...

    def move(self, src: str, dst: str) -> None: ...

    def size(self, path: str) -> int: ...

    def iter_files(self) -> Iterator[FileRecord]: ...


class LocalStore:
    """基于本地目录的存储"""

    def __init__(self, name: str, root: Path):
        self.name = name
        self.root = Path(root).resolve()

    def __repr__(self) -> str:
        return f"LocalStore({self.name!r}, {str(self.root)!r})"

    def _resolve(self, path: str) -> Path:
        full = (self.root / path.lstrip('/')).resolve()
        if full != self.root and self.root not in full.parents:
            raise StoreError(self.name, path, "path escapes store root")
        return full

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def read(self, path: str) -> bytes:
        full = self._resolve(path)
        if not full.is_file():
            raise StoreNotFoundError(self.name, path)
        try:
            return full.read_bytes()
        except OSError as e:
            raise StoreIOError(self.name, path, str(e)) from e

    def write(self, path: str, data: bytes) -> None:
        full = self._resolve(path)
        try:
            full.parent.mkdir(parents=True, exist_ok=True)
            tmp = full.with_name(full.name + ".part")
            tmp.write_bytes(data)
            os.replace(tmp, full)
        except OSError as e:
            raise StoreIOError(self.name, path, str(e)) from e

    def delete(self, path: str) -> None:
        full = self._resolve(path)
        if not full.is_file():
            raise StoreNotFoundError(self.name, path)
        try:
            full.unlink()
        except OSError as e:
            raise StoreIOError(self.name, path, str(e)) from e

    def move(self, src: str, dst: str) -> None:
        src_full = self._resolve(src)
        dst_full = self._resolve(dst)
        if not src_full.is_file():
            raise StoreNotFoundError(self.name, src)
        try:
            dst_full.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(src_full), str(dst_full))
        except OSError as e:
            raise StoreIOError(self.name, src, str(e)) from e

    def size(self, path: str) -> int:
        full = self._resolve(path)
        if not full.is_file():
            raise StoreNotFoundError(self.name, path)
        return full.stat().st_size

    def iter_files(self) -> Iterator[FileRecord]:
        if not self.root.exists():
            return
        for dirpath, _dirnames, filenames in os.walk(self.root):
            for filename in filenames:
                if filename.endswith(".part"):
                    continue
                full = Path(dirpath) / filename
                try:
                    stat = full.stat()
                except OSError as e:
                    logger.warning(f"无法读取文件信息 {full}: {e}")
                    continue
                yield FileRecord(
                    location=self.name,
                    path=full.relative_to(self.root).as_posix(),
                    size=stat.st_size,
                    modified=stat.st_mtime,
                )


def transfer(src_store: Store, src_path: str, dst_store: Store, dst_path: str) -> None:
    """
    在存储之间移动文件

    同一存储内直接 move；跨存储时先写目标再删除源，删除失败不回滚已写入的目标。
    """
    if src_store is dst_store:
        src_store.move(src_path, dst_path)
        return
    data = src_store.read(src_path)
    dst_store.write(dst_path, data)
    src_store.delete(src_path)


def build_stores(store_roots: Dict[str, Path]) -> Dict[str, Store]:
    """根据配置创建本地存储"""
    return {name: LocalStore(name, root) for name, root in store_roots.items()}
