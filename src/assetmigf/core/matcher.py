"""
文件匹配模块

按固定顺序的策略级联为断链资源寻找文件，并给出置信度。
使用 rapidfuzz 计算编辑距离与相似度。
"""

import os
import re
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from loguru import logger
from rapidfuzz import fuzz
from rapidfuzz.distance import Levenshtein

from .models import FileRecord, MatchCandidate, MatchResult, MatchStrategy

# 各策略的固定置信度
CONFIDENCE = {
    MatchStrategy.EXPECTED_PATH: 1.0,
    MatchStrategy.EXACT: 1.0,
    MatchStrategy.EXACT_ANY: 0.95,
    MatchStrategy.CASE_INSENSITIVE: 0.85,
    MatchStrategy.NORMALIZED: 0.75,
    MatchStrategy.BASENAME: 0.70,
    MatchStrategy.SIZE: 0.60,
}

SIZE_MIN_SIMILARITY = 0.5

# 可互换的扩展名
EXTENSION_FAMILIES = {
    'jpg': 'jpg',
    'jpeg': 'jpg',
}

SUFFIX_WORDS = {'copy', 'backup', 'old', 'new'}

_DOTTED_SUFFIX = re.compile(r'^(.+)\.(?:copy|backup|old|new|\d+)$')
_SEPARATORS = re.compile(r'[\s._\-]+')
_PAREN_NUMBER = re.compile(r'\(\d+\)\s*$')
_NON_WORD = re.compile(r'[^\w\s]')
_NON_WORD_EXT = re.compile(r'\W')


def split_ext(filename: str):
    """拆分文件名主体与小写扩展名（不含点）"""
    stem, ext = os.path.splitext(filename)
    return stem, ext[1:].lower()


def extension_family(ext: str) -> str:
    ext = ext.lower().lstrip('.')
    return EXTENSION_FAMILIES.get(ext, ext)


def normalize_filename(filename: str) -> str:
    """
    归一化文件名

    小写；分隔符折叠为空格；去掉扩展名前的 copy/backup/old/new、".2"、"(n)"、"copy 2" 这类后缀；
    移除非单词字符。对结果再次归一化不会改变它。

    参数:
        filename: 原始文件名

    返回:
        str: 归一化后的文件名
    """
    stem, ext = split_ext(filename.lower())

    # 点号分隔的编号后缀 (photo.2.jpg)，在折叠分隔符之前处理，IMG_001 不受影响
    while _DOTTED_SUFFIX.match(stem):
        stem = _DOTTED_SUFFIX.sub(r'\1', stem)
    stem = _SEPARATORS.sub(' ', stem)
    while _PAREN_NUMBER.search(stem):
        stem = _PAREN_NUMBER.sub('', stem)
    stem = _NON_WORD.sub('', stem)
    tokens = stem.split()

    # 至少保留一个词
    while len(tokens) > 1:
        if tokens[-1] in SUFFIX_WORDS:
            tokens.pop()
        elif len(tokens) > 2 and tokens[-1].isdigit() and tokens[-2] in SUFFIX_WORDS:
            del tokens[-2:]
        else:
            break

    stem = ' '.join(tokens)
    ext = _NON_WORD_EXT.sub('', ext)
    if not stem:
        return ext
    return f"{stem}.{ext}" if ext else stem


def filename_similarity(name1: str, name2: str) -> float:
    """归一化文件名相似度 (0.0 - 1.0)"""
    n1, n2 = normalize_filename(name1), normalize_filename(name2)
    if not n1 or not n2:
        return 0.0
    return fuzz.ratio(n1, n2) / 100.0


@dataclass
class SearchIndexes:
    """文件清单上的查找索引"""
    exact: Dict[str, List[FileRecord]] = field(default_factory=lambda: defaultdict(list))
    case_insensitive: Dict[str, List[FileRecord]] = field(default_factory=lambda: defaultdict(list))
    normalized: Dict[str, List[FileRecord]] = field(default_factory=lambda: defaultdict(list))
    basename: Dict[str, List[FileRecord]] = field(default_factory=lambda: defaultdict(list))
    by_size: Dict[int, List[FileRecord]] = field(default_factory=lambda: defaultdict(list))


def build_search_indexes(file_inventory: Iterable[FileRecord]) -> SearchIndexes:
    """为文件清单建立索引"""
    indexes = SearchIndexes()
    count = 0
    for record in file_inventory:
        name = record.filename
        indexes.exact[name].append(record)
        indexes.case_insensitive[name.lower()].append(record)
        indexes.normalized[normalize_filename(name)].append(record)
        stem, _ext = split_ext(name)
        indexes.basename[stem.lower()].append(record)
        if record.size > 0:
            indexes.by_size[record.size].append(record)
        count += 1
    logger.debug(f"已为 {count} 个文件建立索引")
    return indexes


class FileMatcher:
    """文件匹配器"""

    def __init__(
        self,
        target_location: Optional[str] = None,
        low_confidence_threshold: float = 0.85,
        min_fuzzy_confidence: float = 0.70,
        fuzzy_max_distance: int = 5,
        fuzzy_max_candidates: int = 5,
    ):
        """
        参数:
            target_location: 迁移目标存储名称，平局时优先
            low_confidence_threshold: 低于该值的匹配需要人工复核
            min_fuzzy_confidence: 模糊匹配的最低接受值，低于则拒绝
            fuzzy_max_distance: 模糊匹配允许的最大编辑距离
            fuzzy_max_candidates: 模糊匹配保留的候选数
        """
        self.target_location = target_location
        self.low_confidence_threshold = low_confidence_threshold
        self.min_fuzzy_confidence = min_fuzzy_confidence
        self.fuzzy_max_distance = fuzzy_max_distance
        self.fuzzy_max_candidates = fuzzy_max_candidates

    def _pick(self, files: List[FileRecord]) -> FileRecord:
        # 目标位置优先，其次最新修改
        return max(files, key=lambda f: (f.location == self.target_location, f.modified))

    def _accept(self, strategy: MatchStrategy, confidence: float, file: FileRecord) -> MatchResult:
        candidate = MatchCandidate(strategy=strategy, confidence=confidence, file=file)
        low = confidence < self.low_confidence_threshold
        if low:
            logger.warning(
                f"低置信度匹配 {file.location}:{file.path} "
                f"(策略 {strategy.value}, 置信度 {confidence:.2f})，需要人工复核"
            )
        return MatchResult(candidate=candidate, low_confidence=low)

    def find_match(
        self,
        target_name: str,
        target_size: int,
        file_inventory: List[FileRecord],
        indexes: SearchIndexes,
        source_location: Optional[str] = None,
        expected_path: Optional[str] = None,
        probe: Optional[Callable[[str], Optional[FileRecord]]] = None,
    ) -> MatchResult:
        """
        在文件清单中为目标文件名寻找匹配

        第 0 步：若源存储在预期路径上已有该文件，直接返回 expected_path，
        调用方只需更新记录的位置。之后依次尝试七种策略，第一个有结果的策略胜出。

        参数:
            target_name: 要查找的文件名
            target_size: 记录中的文件大小，0 表示未知
            file_inventory: 全部文件清单
            indexes: build_search_indexes 的结果
            source_location: 资源记录所在的存储
            expected_path: 资源记录指向的路径
            probe: 在源存储上检查 expected_path 的函数

        返回:
            MatchResult: 匹配结果；拒绝的模糊匹配放在 rejected 中
        """
        if not target_name:
            return MatchResult()

        if expected_path and probe is not None:
            found = probe(expected_path)
            if found is not None:
                return self._accept(MatchStrategy.EXPECTED_PATH, CONFIDENCE[MatchStrategy.EXPECTED_PATH], found)

        # 1-2. 精确文件名
        exact = indexes.exact.get(target_name, [])
        if exact:
            same = [f for f in exact if f.location == source_location]
            if same:
                return self._accept(MatchStrategy.EXACT, CONFIDENCE[MatchStrategy.EXACT], self._pick(same))
            return self._accept(MatchStrategy.EXACT_ANY, CONFIDENCE[MatchStrategy.EXACT_ANY], self._pick(exact))

        # 3. 忽略大小写
        files = indexes.case_insensitive.get(target_name.lower(), [])
        if files:
            return self._accept(MatchStrategy.CASE_INSENSITIVE, CONFIDENCE[MatchStrategy.CASE_INSENSITIVE], self._pick(files))

        # 4. 归一化
        normalized = normalize_filename(target_name)
        files = indexes.normalized.get(normalized, []) if normalized else []
        if files:
            return self._accept(MatchStrategy.NORMALIZED, CONFIDENCE[MatchStrategy.NORMALIZED], self._pick(files))

        # 5. 主体名 + 同族扩展名
        stem, ext = split_ext(target_name)
        family = extension_family(ext)
        files = [
            f for f in indexes.basename.get(stem.lower(), [])
            if extension_family(split_ext(f.filename)[1]) == family
        ]
        if files:
            return self._accept(MatchStrategy.BASENAME, CONFIDENCE[MatchStrategy.BASENAME], self._pick(files))

        # 6. 大小相同且名称相近
        if target_size > 0:
            files = [
                f for f in indexes.by_size.get(target_size, [])
                if filename_similarity(target_name, f.filename) > SIZE_MIN_SIMILARITY
            ]
            if files:
                return self._accept(MatchStrategy.SIZE, CONFIDENCE[MatchStrategy.SIZE], self._pick(files))

        # 7. 模糊匹配
        return self._fuzzy_match(target_name, file_inventory)

    def _fuzzy_candidates(self, target_name: str, file_inventory: List[FileRecord]) -> List[FileRecord]:
        """按长度与前缀预筛选，避免对整个清单计算编辑距离"""
        target_lower = target_name.lower()
        length = len(target_lower)
        min_len, max_len = int(length * 0.7), int(length * 1.3)
        prefix = target_lower[:3]

        candidates = []
        for record in file_inventory:
            name = record.filename.lower()
            if not min_len <= len(name) <= max_len:
                continue
            if len(name) >= 3 and Levenshtein.distance(prefix, name[:3]) > 2:
                continue
            candidates.append(record)
        return candidates

    def _fuzzy_match(self, target_name: str, file_inventory: List[FileRecord]) -> MatchResult:
        target_lower = target_name.lower()
        scored = []
        for record in self._fuzzy_candidates(target_name, file_inventory):
            name = record.filename.lower()
            distance = Levenshtein.distance(target_lower, name, score_cutoff=self.fuzzy_max_distance)
            if distance > self.fuzzy_max_distance:
                continue
            similarity = 1 - distance / max(len(target_lower), len(name))
            scored.append((similarity, record))

        if not scored:
            return MatchResult()

        scored.sort(key=lambda item: item[0], reverse=True)
        top = scored[:self.fuzzy_max_candidates]
        best_similarity = top[0][0]
        best = self._pick([record for similarity, record in top if similarity == best_similarity])

        if best_similarity < self.min_fuzzy_confidence:
            logger.info(
                f"拒绝模糊匹配 {target_name} -> {best.filename} "
                f"(置信度 {best_similarity:.2f} < {self.min_fuzzy_confidence:.2f})"
            )
            rejected = MatchCandidate(strategy=MatchStrategy.FUZZY, confidence=best_similarity, file=best)
            return MatchResult(rejected=rejected)

        return self._accept(MatchStrategy.FUZZY, best_similarity, best)
