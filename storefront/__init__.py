"""Storefront — 注文処理・在庫引き当てバックエンド"""
