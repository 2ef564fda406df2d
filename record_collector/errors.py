"""
アプリケーション固有の例外定義モジュール。

maimai DX NET への通信、HTMLパース、SQLite永続化、設定読み込みで発生する例外を
分類して扱うために、基底例外および派生例外を定義する。

扱い方針:
- Maintenance はエラーではなく「今回の同期はスキップ」として扱う
- AuthExpired は再ログインを1回だけ試み、それでも失敗した場合のみ上位へ伝播する
- TransportError / MalformedDocument は当該サイクルを失敗させる（次回の定期実行で自然に再試行）
- StoreError はサイクルの残り処理を中断するが、コミット済みのトランザクションは壊さない
"""


class RecordCollectorError(Exception):
    """レコード収集システム全体の基底例外。"""


class RemoteError(RecordCollectorError):
    """maimai DX NET との通信に起因する例外。"""


class AuthExpired(RemoteError):
    """セッション切れ、またはログインに失敗した場合の例外。"""


class TransportError(RemoteError):
    """HTTPエラーや通信失敗が発生した場合の例外。"""


class Maintenance(RemoteError):
    """メンテナンス時間帯、またはサイトが503を返した場合の例外。"""


class MalformedDocument(RecordCollectorError):
    """取得したHTMLが想定する構造を満たさない場合の例外。"""


class StoreError(RecordCollectorError):
    """SQLiteへの読み書きに失敗した場合の例外。"""


class ConfigError(RecordCollectorError):
    """設定ファイルや環境変数が不足・不正な場合の例外。"""
