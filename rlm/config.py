# -*- coding: utf-8 -*-

import os

# Query loop
MAX_ITERATIONS = int(os.getenv("RLM_MAX_ITERATIONS", "50"))
MAX_REFINEMENTS = int(os.getenv("RLM_MAX_REFINEMENTS", "1"))
MIN_SCORE = int(os.getenv("RLM_MIN_SCORE", "32"))
EVAL_SCORE_MAX = 40
MAX_RECURSION_DEPTH = int(os.getenv("RLM_MAX_RECURSION_DEPTH", "5"))
SUB_QUERY_MAX_ITERATIONS = int(os.getenv("RLM_SUB_QUERY_MAX_ITERATIONS", "10"))
CONTEXT_PREVIEW_CHARS = 2000
KEEP_RECENT_MESSAGES = 4
CHARS_PER_TOKEN = 4
MAX_FEEDBACK_VALUE_CHARS = int(os.getenv("RLM_MAX_FEEDBACK_VALUE_CHARS", "8000"))

# Sandbox guardrails (per evaluation)
EVAL_FUEL = int(os.getenv("RLM_EVAL_FUEL", "200000"))
EVAL_TIMEOUT_S = float(os.getenv("RLM_EVAL_TIMEOUT_S", "30"))
MAX_OUTPUT_CHARS = int(os.getenv("RLM_MAX_OUTPUT_CHARS", "20000"))
EVAL_MAX_RANGE = int(os.getenv("RLM_EVAL_MAX_RANGE", "1000000"))

# Completion service
DEFAULT_TIMEOUT = int(os.getenv("MODEL_TIMEOUT", "150"))
MODEL_RETRIES = int(os.getenv("MODEL_RETRIES", "3"))
MODEL_BACKOFF_S = float(os.getenv("MODEL_BACKOFF_S", "1.0"))
MODEL_MAX_TOKENS = int(os.getenv("MODEL_MAX_TOKENS", "1200"))
COST_PER_1K_TOKENS = float(os.getenv("MODEL_COST_PER_1K_TOKENS", "0"))
RETRY_STATUS_CODES = (408, 409, 429, 500, 502, 503, 504)

# Memory store
LEARNING_DECAY_MIN_VOTES = 5
LEARNING_DECAY_RATIO = 0.7
GOOD_EXAMPLE_SCORE = 32
MAX_GOOD_EXAMPLES = 3
MAX_BAD_EXAMPLES = 3

# Q&A pipeline
QA_OVERSAMPLE = float(os.getenv("RLM_QA_OVERSAMPLE", "1.5"))
QA_BATCH_SIZE = int(os.getenv("RLM_QA_BATCH_SIZE", "5"))
QA_MAX_WORKERS = int(os.getenv("RLM_QA_MAX_WORKERS", "4"))
QA_MAX_ITERATIONS = int(os.getenv("RLM_QA_MAX_ITERATIONS", "20"))
QA_DIFFICULTIES = ("remember", "understand", "apply", "analyze", "evaluate", "create")
QA_CATEGORIES = ("factual", "inferential", "comparative", "analytical", "definitional", "procedural")
