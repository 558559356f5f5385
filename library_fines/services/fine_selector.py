"""Chooses between the advanced and simple fine calculators."""
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from flask import current_app

from library_fines.config.config import Config
from library_fines.services.fine_engine import (MODE_ADVANCED, MODE_SIMPLE,
                                                FineEngine, FineInput, FineResult)
from library_fines.services.user_classifier import UserClassification

logger = logging.getLogger(__name__)


@dataclass
class FineContext:
    """Where a fine calculation is requested from."""
    borrow_id: Optional[str] = None
    record: Any = None
    user_id: Optional[str] = None
    is_admin: bool = False
    is_report: bool = False
    is_bulk: bool = False
    force_mode: Optional[str] = None
    now: Optional[datetime] = None


class FineSelector:

    def __init__(self, engine: Optional[FineEngine] = None, config=Config):
        self.config = config
        self.engine = engine or FineEngine(config=config)

    def select_calculator(self, mode: str):
        return self.engine.simple if mode == MODE_SIMPLE else self.engine.advanced

    def complexity_score(self, user_id: Optional[str], now: Optional[datetime] = None) -> int:
        score = 0
        if user_id:
            if self.engine.classifier.classify(user_id) != UserClassification.STANDARD:
                score += 2
            if self.engine.outstanding_fines(user_id) > 0:
                score += 1
        if self.engine.is_calculation_day_special((now or datetime.now()).date()):
            score += 1
        return score

    def select_mode(self, ctx: FineContext, user_id: Optional[str] = None) -> str:
        if ctx.force_mode in (MODE_ADVANCED, MODE_SIMPLE):
            return ctx.force_mode
        if ctx.is_admin or ctx.is_report:
            return MODE_ADVANCED
        if ctx.is_bulk:
            return MODE_SIMPLE
        score = self.complexity_score(user_id or ctx.user_id, ctx.now)
        return MODE_ADVANCED if score >= self.config.COMPLEXITY_THRESHOLD else MODE_SIMPLE

    def calculate_smart(self, ctx: FineContext) -> FineResult:
        """Calculate with whichever calculator suits the context."""
        record = self.engine.load(ctx.record if ctx.record is not None else ctx.borrow_id)
        if record is None:
            return self.engine.calculate_fine(ctx.borrow_id, ctx.now)

        data = FineInput.of(record)
        mode = self.select_mode(ctx, data.user_id)
        result = self.select_calculator(mode).calculate(record, ctx.now)
        logger.debug(f"Fine for borrow {data.borrow_id} calculated in {mode} mode: "
                     f"{result.total_fine:.2f}")
        return result

    def _calculate_item(self, borrow_id: str, force_mode: Optional[str],
                        now: Optional[datetime]) -> Dict[str, Any]:
        try:
            result = self.calculate_smart(
                FineContext(borrow_id=borrow_id, is_bulk=True, force_mode=force_mode, now=now)
            )
            return {'borrow_id': borrow_id, 'success': True, 'result': result.to_dict()}
        except Exception as e:
            logger.error(f"Bulk fine calculation failed for borrow {borrow_id}: {e}")
            return {'borrow_id': borrow_id, 'success': False, 'error': str(e)}

    def _calculate_in_context(self, app, borrow_id, force_mode, now):
        with app.app_context():
            return self._calculate_item(borrow_id, force_mode, now)

    def bulk_calculate(self, borrow_ids: List[str], batch_size: Optional[int] = None,
                       parallel: bool = True, force_mode: Optional[str] = None,
                       now: Optional[datetime] = None) -> Dict[str, Any]:
        """Calculate fines for many borrows.

        Small batches (up to `batch_size`) run concurrently when `parallel` is
        set; anything larger runs one by one. A failing item never aborts the
        rest.
        """
        batch_size = batch_size or self.config.BULK_BATCH_SIZE
        started = time.monotonic()

        if parallel and len(borrow_ids) <= batch_size:
            app = current_app._get_current_object()
            with ThreadPoolExecutor(max_workers=max(1, len(borrow_ids))) as executor:
                results = list(executor.map(
                    lambda borrow_id: self._calculate_in_context(app, borrow_id, force_mode, now),
                    borrow_ids,
                ))
        else:
            results = [self._calculate_item(borrow_id, force_mode, now)
                       for borrow_id in borrow_ids]

        successful = sum(1 for item in results if item['success'])
        total_fines = sum(item['result']['total_fine'] for item in results if item['success'])
        return {
            'total': len(results),
            'successful': successful,
            'failed': len(results) - successful,
            'total_fines': round(total_fines, 2),
            'parallel': parallel and len(borrow_ids) <= batch_size,
            'duration_ms': int((time.monotonic() - started) * 1000),
            'results': results,
        }
