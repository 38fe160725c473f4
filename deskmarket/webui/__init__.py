"""HTTP surface of the marketplace service"""
