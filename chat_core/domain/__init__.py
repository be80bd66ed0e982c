"""领域层模型与协议。

包含：
- models: 会话轮次 Turn / Part、生成请求与响应、系统指令与工具声明的变体。
- events: 行为日志事件 TelemetryEvent。
- exceptions: 业务异常类型定义。
"""
