"""对话引擎：生成策略、错误恢复、事件流与 Coordinator。"""
