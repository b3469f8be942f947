# ユーティリティ - エラーハンドリング、ログ設定
