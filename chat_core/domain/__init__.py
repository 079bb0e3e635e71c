"""领域层模型与协议。

包含：
- state: 对话状态机。
- taxonomy / exceptions: 错误分类表与业务异常类型。
- conversation: 会话、消息、用户设置以及 PersistenceGateway 抽象。
- models: 面向模型会话的请求/响应结构与 PartialResult。
- personas: AI 人设枚举。
"""
