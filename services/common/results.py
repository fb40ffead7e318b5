"""
業務結果のタグ付き戻り値

サービスの操作は値か ``Failure`` を返す。HTTP 層が ``Failure`` を構造化
エラーボディに変換する。業務ルール違反で例外は投げない。
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import TypeVar, Union


class ErrorKindBase(Enum):
    """エラー種別。HTTP ステータスと既定のメッセージを持つ。"""

    def __init__(self, http_status: int, message: str) -> None:
        self.http_status = http_status
        self.message = message


@dataclass(frozen=True)
class Failure:
    kind: ErrorKindBase
    message: str = ""
    details: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.message:
            object.__setattr__(self, "message", self.kind.message)

    @property
    def http_status(self) -> int:
        return self.kind.http_status


T = TypeVar("T")
Result = Union[T, Failure]


def is_failure(value: object) -> bool:
    return isinstance(value, Failure)
