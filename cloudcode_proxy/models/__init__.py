"""数据模型模块"""
