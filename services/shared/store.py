"""
共通 — キーバリューストア

スキーマレスなレコードを、パーティションキー（と任意のソートキー）で
保存・取得する汎用ストア。エンティティごとに 1 テーブルを使う。

テーブル構造:
    pk      TEXT     パーティションキーの値
    sk      TEXT     ソートキーの値（ソートキーを使わないテーブルでは ''）
    data    TEXT     レコード全体（JSON）
    version INTEGER  書き込みのたびに 1 増える（部分更新の楽観的ロック）
    PRIMARY KEY (pk, sk)

フィールド名は JSON のキーとしてバインドパラメータで渡すだけで、
SQL 文字列には一切埋め込まない。予約語や記号を含むフィールド名でも安全。
単一キーへの put / update / delete はそれぞれ 1 トランザクションで完結する。
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from .errors import ConditionFailed, ConfigurationError, DependencyFailure, ValidationError

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_NO_SORT_KEY = ""
MAX_UPDATE_ATTEMPTS = 20


@dataclass
class Page:
    """scan の 1 ページ分。last_evaluated_key が None なら最後のページ。"""

    items: list[dict] = field(default_factory=list)
    last_evaluated_key: dict | None = None


class KeyValueStore:
    """SQLAlchemy (async) 上のキーバリューストア"""

    def __init__(
        self,
        session_factory: sessionmaker,
        table_name: str,
        partition_key: str,
        sort_key: str | None = None,
    ):
        if not _IDENTIFIER.match(table_name or ""):
            raise ConfigurationError(f"Invalid table name: {table_name!r}")
        self.session_factory = session_factory
        self.table_name = table_name
        self.partition_key = partition_key
        self.sort_key = sort_key

    # ── スキーマ ─────────────────────────────────

    async def create_table(self) -> None:
        async with self._session() as session:
            await session.execute(
                text(f"""
                    CREATE TABLE IF NOT EXISTS {self.table_name} (
                        pk      TEXT NOT NULL,
                        sk      TEXT NOT NULL DEFAULT '',
                        data    TEXT NOT NULL,
                        version INTEGER NOT NULL DEFAULT 1,
                        PRIMARY KEY (pk, sk)
                    )
                """)
            )
            await session.commit()

    # ── 読み取り ─────────────────────────────────

    async def get(self, pk: Any, sk: Any = None) -> dict | None:
        """キーで 1 件取得する。存在しなければ None（エラーではない）。"""
        async with self._session() as session:
            result = await session.execute(
                text(f"SELECT data FROM {self.table_name} WHERE pk = :pk AND sk = :sk"),
                {"pk": str(pk), "sk": self._sort_value(sk)},
            )
            row = result.fetchone()
        return _decode(row.data) if row else None

    async def scan(
        self,
        limit: int | None = None,
        exclusive_start_key: dict | None = None,
    ) -> Page:
        """
        テーブル全体を (pk, sk) 順に読む。O(n)。

        limit と exclusive_start_key がページングの拡張ポイント。
        limit を省略すると全件を 1 ページで返す。
        """
        where = ""
        params: dict[str, Any] = {}
        if exclusive_start_key:
            params["start_pk"] = str(exclusive_start_key[self.partition_key])
            params["start_sk"] = self._sort_value(
                exclusive_start_key.get(self.sort_key) if self.sort_key else None
            )
            where = "WHERE (pk > :start_pk OR (pk = :start_pk AND sk > :start_sk))"
        sql = f"SELECT pk, sk, data FROM {self.table_name} {where} ORDER BY pk, sk"
        if limit is not None:
            sql += " LIMIT :limit"
            params["limit"] = limit

        async with self._session() as session:
            result = await session.execute(text(sql), params)
            rows = result.fetchall()

        items = [_decode(row.data) for row in rows]
        last_key = None
        if limit and len(rows) == limit:
            last_key = self.key_of(items[-1])
        return Page(items=items, last_evaluated_key=last_key)

    async def query(
        self,
        pk: Any,
        sk: Any = None,
        contains: dict[str, Any] | None = None,
    ) -> list[dict]:
        """
        パーティションキー一致（sk を指定すればソートキーも完全一致）で読み、
        その後 contains で絞り込む。

        contains は読み取り後のフィルタ: 文字列なら部分一致、リストなら要素一致。
        属性が無いレコードは一致しない。
        """
        sql = f"SELECT data FROM {self.table_name} WHERE pk = :pk"
        params: dict[str, Any] = {"pk": str(pk)}
        if sk is not None:
            sql += " AND sk = :sk"
            params["sk"] = self._sort_value(sk)
        sql += " ORDER BY sk"

        async with self._session() as session:
            result = await session.execute(text(sql), params)
            items = [_decode(row.data) for row in result.fetchall()]

        if contains:
            items = [
                item
                for item in items
                if all(_contains(item.get(name), value) for name, value in contains.items())
            ]
        return items

    # ── 書き込み ─────────────────────────────────

    async def put(self, record: dict, overwrite: bool = True) -> dict:
        """
        レコード全体を書き込む（置き換え）。

        overwrite=False のときはキーが既に存在すれば ConditionFailed を送出し、
        何も書き込まない。
        """
        pk, sk = self._key_values(record)
        params = {"pk": pk, "sk": sk, "data": _encode(record)}
        sql = f"INSERT INTO {self.table_name} (pk, sk, data) VALUES (:pk, :sk, :data)"
        if overwrite:
            sql += (
                " ON CONFLICT (pk, sk) DO UPDATE"
                f" SET data = excluded.data, version = {self.table_name}.version + 1"
            )

        async with self._session() as session:
            try:
                await session.execute(text(sql), params)
                await session.commit()
            except IntegrityError as e:
                if overwrite:
                    raise
                # 主キーが衝突した
                await session.rollback()
                raise ConditionFailed(
                    f"Record already exists in {self.table_name}: {self.key_of(record)}"
                ) from e
        return record

    async def update(self, pk: Any, fields: dict, sk: Any = None) -> dict:
        """
        指定したフィールドだけを既存レコードにマージする（部分更新）。

        - レコードが無ければ作成する（upsert）
        - キー属性は変更できない（fields に含まれていても無視する）
        - マージ後のレコードを返す

        version 列で楽観的ロックを行う:
        読み取った version のままの行にだけ書き込み、その間に他の書き込みが
        入っていれば読み直してマージし直す。同時更新でフィールドが失われない。
        """
        if not isinstance(fields, dict):
            raise ValidationError("Update fields must be a JSON object")
        changes = {
            name: value
            for name, value in fields.items()
            if name not in (self.partition_key, self.sort_key)
        }
        if not changes:
            raise ValidationError("No updatable fields supplied")

        params = {"pk": str(pk), "sk": self._sort_value(sk)}

        async with self._session() as session:
            for _ in range(MAX_UPDATE_ATTEMPTS):
                result = await session.execute(
                    text(
                        f"SELECT data, version FROM {self.table_name} "
                        "WHERE pk = :pk AND sk = :sk"
                    ),
                    params,
                )
                row = result.fetchone()

                record = _decode(row.data) if row else {}
                record.update(changes)
                record[self.partition_key] = pk
                if self.sort_key and sk is not None:
                    record[self.sort_key] = sk

                expected_version = row.version if row else None
                if await self._compare_and_set(session, params, record, expected_version):
                    await session.commit()
                    return record
                await session.rollback()

        raise ConditionFailed(
            f"Concurrent updates kept conflicting on {self.table_name}: {params['pk']}"
        )

    async def delete(self, pk: Any, sk: Any = None) -> None:
        """無条件に削除する。存在しないキーでもエラーにしない（冪等）。"""
        async with self._session() as session:
            await session.execute(
                text(f"DELETE FROM {self.table_name} WHERE pk = :pk AND sk = :sk"),
                {"pk": str(pk), "sk": self._sort_value(sk)},
            )
            await session.commit()

    # ── ヘルパー ─────────────────────────────────

    def key_of(self, record: dict) -> dict:
        key = {self.partition_key: record.get(self.partition_key)}
        if self.sort_key:
            key[self.sort_key] = record.get(self.sort_key)
        return key

    def _key_values(self, record: dict) -> tuple[str, str]:
        if not isinstance(record, dict):
            raise ValidationError("Record must be a JSON object")
        pk = record.get(self.partition_key)
        if pk is None or pk == "":
            raise ValidationError(f"Record is missing key attribute: {self.partition_key}")
        sk = None
        if self.sort_key:
            sk = record.get(self.sort_key)
            if sk is None or sk == "":
                raise ValidationError(f"Record is missing key attribute: {self.sort_key}")
        return str(pk), self._sort_value(sk)

    async def _compare_and_set(
        self,
        session: AsyncSession,
        params: dict,
        record: dict,
        expected_version: int | None,
    ) -> bool:
        """
        読み取った version のときだけ書き込む。

        expected_version が None なら「まだ行が無いこと」が条件。
        条件が崩れていれば何も書かずに False を返す。
        """
        data = _encode(record)
        if expected_version is None:
            try:
                await session.execute(
                    text(f"""
                        INSERT INTO {self.table_name} (pk, sk, data, version)
                        VALUES (:pk, :sk, :data, 1)
                    """),
                    {**params, "data": data},
                )
            except IntegrityError:
                # 同じキーの行が先に作られた
                return False
            return True

        result = await session.execute(
            text(f"""
                UPDATE {self.table_name}
                SET data = :data, version = version + 1
                WHERE pk = :pk AND sk = :sk AND version = :version
            """),
            {**params, "data": data, "version": expected_version},
        )
        return result.rowcount == 1

    def _sort_value(self, sk: Any) -> str:
        if not self.sort_key or sk is None:
            return _NO_SORT_KEY
        return str(sk)

    def _session(self) -> "_StoreSession":
        return _StoreSession(self.session_factory)


class _StoreSession:
    """
    セッションのコンテキストマネージャ。

    SQLAlchemy の例外は DependencyFailure に包んで送出する（元の例外は __cause__）。
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory
        self.session: AsyncSession | None = None

    async def __aenter__(self) -> AsyncSession:
        try:
            self.session = self.session_factory()
        except SQLAlchemyError as e:
            raise DependencyFailure(f"Store unavailable: {e}") from e
        return self.session

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        await self.session.close()
        if isinstance(exc, (SQLAlchemyError, OSError)):
            raise DependencyFailure(f"Store operation failed: {exc}") from exc
        return False


def _encode(record: dict) -> str:
    return json.dumps(record, default=str)


def _decode(data: Any) -> dict:
    return json.loads(data) if isinstance(data, str) else dict(data)


def _contains(actual: Any, expected: Any) -> bool:
    if actual is None:
        return False
    if isinstance(actual, str):
        return isinstance(expected, str) and expected in actual
    if isinstance(actual, (list, tuple, set)):
        return expected in actual
    return False
