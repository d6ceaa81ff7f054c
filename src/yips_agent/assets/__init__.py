"""内置资源（默认配置 YAML）。"""
