"""Toast notifications shown by the dashboard flows"""

import itertools
import logging
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger(__name__)

VARIANTS = ('success', 'error', 'info')


@dataclass
class Toast:
    id: int
    title: str
    description: Optional[str] = None
    variant: str = 'info'


class Toaster:
    def __init__(self, limit: int = 5):
        self.limit = limit
        self.toasts: List[Toast] = []
        self._ids = itertools.count(1)

    def show(self, title: str, description: Optional[str] = None, variant: str = 'info') -> Toast:
        if variant not in VARIANTS:
            raise ValueError(f"Unknown toast variant: {variant}")
        toast = Toast(next(self._ids), title, description, variant)
        self.toasts.append(toast)
        if len(self.toasts) > self.limit:
            self.toasts = self.toasts[-self.limit:]
        logger.debug(f"Toast [{variant}] {title}: {description}")
        return toast

    def success(self, title: str, description: Optional[str] = None) -> Toast:
        return self.show(title, description, 'success')

    def error(self, title: str, description: Optional[str] = None) -> Toast:
        return self.show(title, description, 'error')

    def info(self, title: str, description: Optional[str] = None) -> Toast:
        return self.show(title, description, 'info')

    def dismiss(self, toast_id: int) -> None:
        self.toasts = [t for t in self.toasts if t.id != toast_id]

    def clear(self) -> None:
        self.toasts = []

    @property
    def last(self) -> Optional[Toast]:
        return self.toasts[-1] if self.toasts else None
