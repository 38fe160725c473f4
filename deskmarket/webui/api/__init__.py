"""Marketplace API routers"""
