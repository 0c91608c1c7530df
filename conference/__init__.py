"""
Multi-persona AI discussion engine.

Modules:
- manager: ConversationManager state machine + turn scheduler
- providers: streaming adapter over OpenAI-compatible providers
- llm: provider lookup table + LangChain chat client
- agents: per-turn prompt assembly
- aggregator: streamed fragments -> committed message
- states: lifecycle enums + character status tracker
- storage: key-value persistence, config merge, model cache
"""
