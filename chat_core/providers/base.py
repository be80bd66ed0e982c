"""ContentGenerator 抽象接口。

ChatSession 不直接依赖具体厂商的 HTTP 协议，而是依赖此协议：

- generate_content: 一次非流式调用，返回完整的 GenerateContentResponse。
- generate_content_stream: 返回一个异步迭代器，逐个产出响应分块。

request_id 由 ChatSession 为每次交换生成一次，实现方必须原样透传，
不得自行生成新的关联 ID；行为日志只认 ChatSession 的 request_id。
"""

from typing import AsyncIterator, Protocol

from chat_core.domain.models import GenerateContentRequest, GenerateContentResponse


class ContentGenerator(Protocol):
    name: str

    async def generate_content(
        self, request: GenerateContentRequest, prompt_id: str, request_id: str
    ) -> GenerateContentResponse:
        ...

    async def generate_content_stream(
        self, request: GenerateContentRequest, prompt_id: str, request_id: str
    ) -> AsyncIterator[GenerateContentResponse]:
        """返回流式分块迭代器；提前停止迭代时实现方应释放连接。"""

        ...
