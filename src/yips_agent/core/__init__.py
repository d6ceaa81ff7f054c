"""核心：契约、错误、turn engine、会话装配。"""
