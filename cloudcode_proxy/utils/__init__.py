"""通用工具模块"""
