"""配置（YAML overlay + pydantic 校验）。"""
