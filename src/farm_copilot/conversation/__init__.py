"""
Conversational layer.

- normalize: text normalization and input cleanup
- context: conversation context and its merge rules
- clarification: scripted clarification for broad questions
- intent: question -> topic/mode
- followup: elliptical follow-ups -> rewritten question or result op
- result_ops: sort / total / augment / strip / scope on the last result
- router: topic -> handler dispatch behind the Truth Gate
- orchestrator: handle_turn(), the entry point used by the UI
"""
