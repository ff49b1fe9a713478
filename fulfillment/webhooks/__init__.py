"""Provider webhook routers"""
