"""Checkout Service — カート・注文・決済を扱うチェックアウトバックエンド"""
