"""
HuggingFace Client - Local model wrapper for the validation advisor

Responsibilities:
- Load a causal LM and its tokenizer
- Generate text completions (chat template applied when available)
- Generate JSON-object completions with light repair

Design principles:
- Dependency injection (constructed by the app, never a singleton)
- Optional: only imported when GOAL_PLANNER_HF_MODEL is configured
- Fail fast on load errors; generation errors propagate to the caller
"""

import logging
import time
from typing import Any, Dict, Optional

import torch
from transformers import AutoModelForCausalLM, AutoTokenizer

logger = logging.getLogger(__name__)

DEVICE_CUDA = "cuda"
DEVICE_CPU = "cpu"


class HuggingFaceClient:
    """Wrapper for HuggingFace model inference"""

    def __init__(self, model_name: str, device: Optional[str] = None) -> None:
        """
        Initialize model and tokenizer

        Args:
            model_name: HuggingFace model identifier
            device: "cuda" or "cpu" (defaults to cuda when available)

        Raises:
            RuntimeError: If CUDA requested but not available
        """
        self.model_name = model_name
        self.device = device or (DEVICE_CUDA if torch.cuda.is_available() else DEVICE_CPU)

        if self.device == DEVICE_CUDA and not torch.cuda.is_available():
            raise RuntimeError("CUDA requested but not available")

        logger.info(f"Loading model: {model_name} on {self.device}")

        self.tokenizer = AutoTokenizer.from_pretrained(model_name)
        if self.tokenizer.pad_token is None and self.tokenizer.eos_token is not None:
            self.tokenizer.pad_token = self.tokenizer.eos_token

        self.model = AutoModelForCausalLM.from_pretrained(
            model_name,
            torch_dtype=torch.bfloat16 if self.device == DEVICE_CUDA else torch.float32,
        )
        self.model.to(self.device)
        self.model.eval()

        logger.info("HuggingFace client initialized successfully")

    def is_loaded(self) -> bool:
        return self.model is not None and self.tokenizer is not None

    def _format(self, prompt: str) -> str:
        if getattr(self.tokenizer, "chat_template", None):
            return self.tokenizer.apply_chat_template(
                [{"role": "user", "content": prompt}],
                tokenize=False,
                add_generation_prompt=True,
            )
        return prompt

    def generate(self, prompt: str, max_tokens: int = 256, temperature: float = 0.3) -> str:
        """
        Generate text completion from prompt

        Raises:
            RuntimeError: If model not loaded
        """
        if not self.is_loaded():
            raise RuntimeError("Model not loaded")

        start_time = time.time()

        inputs = self.tokenizer(self._format(prompt), return_tensors="pt").to(self.device)
        prompt_tokens = inputs.input_ids.shape[1]

        with torch.no_grad():
            outputs = self.model.generate(
                inputs.input_ids,
                attention_mask=inputs.attention_mask,
                max_new_tokens=max_tokens,
                temperature=temperature if temperature > 0 else None,
                do_sample=temperature > 0,
                pad_token_id=self.tokenizer.pad_token_id,
            )

        generated = self.tokenizer.decode(outputs[0][prompt_tokens:], skip_special_tokens=True)

        logger.debug(
            f"Generated {len(outputs[0]) - prompt_tokens} tokens "
            f"in {(time.time() - start_time) * 1000:.0f}ms"
        )
        return generated

    def generate_json(self, prompt: str, max_tokens: int = 256) -> str:
        """
        Generate a JSON object completion (deterministic).

        Returns a string; caller must json.loads() it.
        """
        return self._repair_json(self.generate(prompt, max_tokens=max_tokens, temperature=0.0))

    @staticmethod
    def _repair_json(text: str) -> str:
        """
        Strip markdown fences and surrounding prose, keep the outermost
        object and balance trailing braces.
        """
        text = text.strip()
        if text.startswith("```json"):
            text = text[7:]
        if text.startswith("```"):
            text = text[3:]
        if text.endswith("```"):
            text = text[:-3]
        text = text.strip()

        first_brace = text.find('{')
        if first_brace == -1:
            logger.warning("No braces found in JSON repair")
            return text

        last_brace = text.rfind('}')
        text = text[first_brace:last_brace + 1] if last_brace > first_brace else text[first_brace:]

        missing = text.count('{') - text.count('}')
        if missing > 0:
            text += '}' * missing

        return text

    def get_model_info(self) -> Dict[str, Any]:
        return {
            "model_name": self.model_name,
            "device": self.device,
            "is_loaded": self.is_loaded(),
        }
