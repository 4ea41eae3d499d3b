"""
Tai Stability Analysis API Endpoints
"""

import base64
import io
import logging

import pandas as pd
from fastapi import UploadFile, File, Form, Request
from fastapi.responses import JSONResponse, StreamingResponse

from met_analysis import config
from met_analysis.api.models import TaiParams
from met_analysis.breeding.tai_stability import TaiStabilityAnalyzer
from met_analysis.security import limiter, validate_file

logger = logging.getLogger(__name__)


async def _run_tai(file, params):
    validate_file(file)
    contents = await file.read()
    df = pd.read_csv(io.BytesIO(contents))

    analyzer = TaiStabilityAnalyzer(
        df, params.trait_col, params.geno_col, params.env_col, params.rep_col,
        maxp=params.maxp, conf=params.conf, tol=config.MISSING_TOLERANCE
    )
    analyzer.validate()
    analyzer.run_analysis()
    return analyzer


@limiter.limit(config.ANALYZE_RATE_LIMIT)
async def analyze_tai(
    request: Request,
    file: UploadFile = File(...),
    trait_col: str = Form(..., max_length=100),
    geno_col: str = Form(..., max_length=100),
    env_col: str = Form(..., max_length=100),
    rep_col: str = Form(..., max_length=100),
    maxp: float = Form(config.TAI_MAX_MISSING),
    conf: float = Form(config.TAI_CONFIDENCE)
):
    """Tai's alpha and lambda with prediction limits."""
    try:
        params = TaiParams(trait_col=trait_col, geno_col=geno_col, env_col=env_col,
                           rep_col=rep_col, maxp=maxp, conf=conf)
        analyzer = await _run_tai(file, params)
        return {"status": "success", **analyzer.result.to_dict()}

    except Exception as e:
        logger.exception("Tai analysis failed")
        return JSONResponse(status_code=400, content={"status": "error", "message": str(e)})


@limiter.limit(config.ANALYZE_RATE_LIMIT)
async def generate_tai_plot(
    request: Request,
    file: UploadFile = File(...),
    trait_col: str = Form(..., max_length=100),
    geno_col: str = Form(..., max_length=100),
    env_col: str = Form(..., max_length=100),
    rep_col: str = Form(..., max_length=100),
    maxp: float = Form(config.TAI_MAX_MISSING),
    conf: float = Form(config.TAI_CONFIDENCE),
    title: str = Form(None, max_length=200)
):
    """Tai graph as a base64 encoded PNG."""
    try:
        params = TaiParams(trait_col=trait_col, geno_col=geno_col, env_col=env_col,
                           rep_col=rep_col, maxp=maxp, conf=conf, title=title)
        analyzer = await _run_tai(file, params)
        buf = analyzer.generate_plot(title=params.title)
        img_str = base64.b64encode(buf.read()).decode('utf-8')
        return {"status": "success", "image": img_str}

    except Exception as e:
        logger.exception("Tai plot failed")
        return JSONResponse(status_code=400, content={"status": "error", "message": str(e)})


@limiter.limit(config.REPORT_RATE_LIMIT)
async def report_tai(
    request: Request,
    file: UploadFile = File(...),
    trait_col: str = Form(..., max_length=100),
    geno_col: str = Form(..., max_length=100),
    env_col: str = Form(..., max_length=100),
    rep_col: str = Form(..., max_length=100),
    maxp: float = Form(config.TAI_MAX_MISSING),
    conf: float = Form(config.TAI_CONFIDENCE),
    title: str = Form(None, max_length=200)
):
    try:
        params = TaiParams(trait_col=trait_col, geno_col=geno_col, env_col=env_col,
                           rep_col=rep_col, maxp=maxp, conf=conf, title=title)
        analyzer = await _run_tai(file, params)
        report_buffer = analyzer.create_report(title=params.title)
        filename = f"Tai_Stability_Report_{params.trait_col}.docx"

        return StreamingResponse(
            report_buffer,
            media_type="application/vnd.openxmlformats-officedocument.wordprocessingml.document",
            headers={"Content-Disposition": f"attachment; filename={filename}"}
        )
    except Exception as e:
        logger.exception("Tai report failed")
        return JSONResponse(status_code=400, content={"status": "error", "message": str(e)})
