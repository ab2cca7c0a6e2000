from .summarize import SUMMARY_SCHEMA, ChatCompletionSummarizer, Summarizer

__all__ = ["SUMMARY_SCHEMA", "ChatCompletionSummarizer", "Summarizer"]
