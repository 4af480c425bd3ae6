"""In-process classifier backend running the Hugging Face models locally."""
import asyncio
import logging
from typing import Dict, Any, List

import torch
from transformers import AutoTokenizer, AutoModelForSequenceClassification

logger = logging.getLogger(__name__)


class LocalTransformersBackend:
    """Runs text-classification models with transformers.

    Produces the same `[{label, score}, ...]` shape as the hosted inference
    API, so the classifier client maps both identically. Models load lazily
    on first use and stay in memory.
    """

    def __init__(self, max_length: int = 512):
        self.max_length = max_length
        self._models: Dict[str, Any] = {}
        self._lock = asyncio.Lock()

    def _load(self, model_name: str):
        logger.info(f"Loading local model {model_name}...")
        tokenizer = AutoTokenizer.from_pretrained(model_name)
        model = AutoModelForSequenceClassification.from_pretrained(model_name)
        model.eval()  # Set to evaluation mode
        logger.info(f"Local model {model_name} loaded successfully")
        return tokenizer, model

    def _run(self, model_name: str, text: str) -> List[Dict[str, Any]]:
        tokenizer, model = self._models[model_name]
        inputs = tokenizer(
            text,
            return_tensors="pt",
            truncation=True,
            max_length=self.max_length,
            padding=True
        )

        with torch.no_grad():
            outputs = model(**inputs)
            probabilities = torch.nn.functional.softmax(outputs.logits, dim=-1)[0]

        predictions = [
            {"label": model.config.id2label[index], "score": probabilities[index].item()}
            for index in range(probabilities.shape[0])
        ]
        return sorted(predictions, key=lambda p: p["score"], reverse=True)

    async def predict(self, model: str, text: str) -> List[Dict[str, Any]]:
        async with self._lock:
            if model not in self._models:
                self._models[model] = await asyncio.to_thread(self._load, model)
        return await asyncio.to_thread(self._run, model, text)
