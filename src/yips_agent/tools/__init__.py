"""工具：action 协议、workspace 工具执行器、两阶段写入存储、shell 执行。"""
