from __future__ import annotations

import logging
from collections.abc import AsyncIterable, AsyncIterator, Sequence

from genserve.schemas import (
    ChatCompletionChoice,
    ChatCompletionChunk,
    ChatCompletionChunkChoice,
    ChatCompletionResponse,
    ChatMessage,
    DeltaMessage,
    UsageInfo,
)
from genserve.tokenization import Tokenizer
from genserve.types import GenerationRequest, TokenChunk

logger = logging.getLogger(__name__)

ROLE_TAG_FORMAT = "<|{role}|>\n{content}\n"


class ChatServing:
    """OpenAI chat-completion assembly around the core's per-chunk text.

    Built once at startup and shared by every chat request. Prompts are
    rendered by the tokenizer's ``apply_chat_template`` (with ``chat_template``
    overriding the model's own Jinja template); tokenizers without one get
    plain role tags.
    """

    def __init__(
        self,
        model_id: str,
        tokenizer: Tokenizer,
        response_role: str = "assistant",
        chat_template: str | None = None,
    ) -> None:
        self.model_id = model_id
        self._tokenizer = tokenizer
        self._response_role = response_role
        self._chat_template = chat_template
        if chat_template is not None and not hasattr(tokenizer, "apply_chat_template"):
            logger.warning("Tokenizer has no apply_chat_template; ignoring the configured chat template")

    def render_prompt(self, messages: Sequence[ChatMessage]) -> str:
        apply_chat_template = getattr(self._tokenizer, "apply_chat_template", None)
        if apply_chat_template is not None:
            kwargs = {} if self._chat_template is None else {"chat_template": self._chat_template}
            return apply_chat_template(
                [message.model_dump() for message in messages],
                tokenize=False,
                add_generation_prompt=True,
                **kwargs,
            )
        rendered = "".join(
            ROLE_TAG_FORMAT.format(role=message.role, content=message.content)
            for message in messages
        )
        return rendered + f"<|{self._response_role}|>\n"

    def completion_id(self, request: GenerationRequest) -> str:
        return f"chatcmpl-{request.request_id}"

    def build_response(
        self, request: GenerationRequest, text: str, finish_reason: str | None
    ) -> ChatCompletionResponse:
        completion_tokens = len(self._tokenizer.encode(text))
        return ChatCompletionResponse(
            id=self.completion_id(request),
            model=self.model_id,
            choices=[
                ChatCompletionChoice(
                    message=ChatMessage(role=self._response_role, content=text),
                    finish_reason=finish_reason,
                )
            ],
            usage=UsageInfo(
                prompt_tokens=request.input_token_count,
                completion_tokens=completion_tokens,
                total_tokens=request.input_token_count + completion_tokens,
            ),
        )

    async def event_stream(
        self, request: GenerationRequest, chunks: AsyncIterable[TokenChunk]
    ) -> AsyncIterator[str]:
        completion_id = self.completion_id(request)
        yield self._event(completion_id, DeltaMessage(role=self._response_role, content=""))
        async for chunk in chunks:
            if chunk.delta:
                yield self._event(completion_id, DeltaMessage(content=chunk.delta))
            if chunk.is_final:
                yield self._event(completion_id, DeltaMessage(), finish_reason=chunk.finish_reason)
        yield "data: [DONE]\n\n"

    def _event(
        self, completion_id: str, delta: DeltaMessage, finish_reason: str | None = None
    ) -> str:
        chunk = ChatCompletionChunk(
            id=completion_id,
            model=self.model_id,
            choices=[ChatCompletionChunkChoice(delta=delta, finish_reason=finish_reason)],
        )
        return f"data: {chunk.model_dump_json(exclude_none=True)}\n\n"
