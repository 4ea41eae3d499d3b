from fastapi import FastAPI, UploadFile, File, Form, Request
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from typing import List
import base64
import io
import logging

import numpy as np
import pandas as pd

from met_analysis import config
from met_analysis.logging_setup import configure_logging
from met_analysis.api.models import ElstonParams
from met_analysis.breeding.elston_index import ElstonIndexAnalyzer
from met_analysis.security import limiter, validate_file

configure_logging(config.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="MET selection and stability analysis")
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# Security Headers Middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Content-Security-Policy"] = "default-src 'self'; img-src 'self' data:;"
        return response

app.add_middleware(SecurityHeadersMiddleware)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def safe_float(val):
    if val is None or pd.isna(val) or np.isinf(val):
        return None
    return float(val)


# Helper for Elston index
async def perform_elston_analysis(file, params):
    validate_file(file)
    contents = await file.read()
    df = pd.read_csv(io.BytesIO(contents))

    analyzer = ElstonIndexAnalyzer(
        df, params.traits, params.geno_col, params.env_col, params.rep_col,
        means=params.means, model=params.model, lb=params.lb
    )
    analyzer.validate()
    analyzer.run_analysis()
    return analyzer


@app.post("/analyze_elston")
@limiter.limit(config.ANALYZE_RATE_LIMIT)
async def analyze_elston(
    request: Request,
    file: UploadFile = File(...),
    traits: List[str] = Form(...),
    geno_col: str = Form(..., max_length=100),
    env_col: str = Form(None, max_length=100),
    rep_col: str = Form(None, max_length=100),
    means: str = Form("single", max_length=10),
    model: str = Form("gxe", max_length=10),
    lb: str = Form("min", max_length=20)
):
    try:
        params = ElstonParams(traits=traits, geno_col=geno_col, env_col=env_col, rep_col=rep_col,
                              means=means, model=model, lb=lb)
        analyzer = await perform_elston_analysis(file, params)
        res = analyzer.result

        rows = []
        for _, r in res.table.iterrows():
            rows.append({
                "genotype": str(r[params.geno_col]),
                "means": {t: safe_float(r[t]) for t in params.traits},
                "index": safe_float(r["Index"]),
                "rank": None if pd.isna(r["Rank"]) else int(r["Rank"])
            })

        return {
            "status": "success",
            "means": res.means_policy,
            "model": res.model_policy,
            "lb": res.lower_bound_policy,
            "lower_bounds": {t: safe_float(k) for t, k in res.lower_bounds.items()},
            "warnings": [{"code": w.code, "message": w.message} for w in res.warnings],
            "results": rows
        }

    except Exception as e:
        logger.exception("Elston index failed")
        return JSONResponse(status_code=400, content={"status": "error", "message": str(e)})


@app.post("/generate_elston_plot")
@limiter.limit(config.ANALYZE_RATE_LIMIT)
async def generate_elston_plot(
    request: Request,
    file: UploadFile = File(...),
    traits: List[str] = Form(...),
    geno_col: str = Form(..., max_length=100),
    env_col: str = Form(None, max_length=100),
    rep_col: str = Form(None, max_length=100),
    means: str = Form("single", max_length=10),
    model: str = Form("gxe", max_length=10),
    lb: str = Form("min", max_length=20),
    top: int = Form(None, ge=1)
):
    try:
        params = ElstonParams(traits=traits, geno_col=geno_col, env_col=env_col, rep_col=rep_col,
                              means=means, model=model, lb=lb)
        analyzer = await perform_elston_analysis(file, params)
        buf = analyzer.generate_plot(top=top)
        img_str = base64.b64encode(buf.read()).decode('utf-8')
        return {"status": "success", "image": img_str}
    except Exception as e:
        logger.exception("Elston plot failed")
        return JSONResponse(status_code=400, content={"status": "error", "message": str(e)})


@app.post("/report_elston")
@limiter.limit(config.REPORT_RATE_LIMIT)
async def report_elston(
    request: Request,
    file: UploadFile = File(...),
    traits: List[str] = Form(...),
    geno_col: str = Form(..., max_length=100),
    env_col: str = Form(None, max_length=100),
    rep_col: str = Form(None, max_length=100),
    means: str = Form("single", max_length=10),
    model: str = Form("gxe", max_length=10),
    lb: str = Form("min", max_length=20)
):
    try:
        params = ElstonParams(traits=traits, geno_col=geno_col, env_col=env_col, rep_col=rep_col,
                              means=means, model=model, lb=lb)
        analyzer = await perform_elston_analysis(file, params)
        return StreamingResponse(
            analyzer.create_report(),
            media_type="application/vnd.openxmlformats-officedocument.wordprocessingml.document",
            headers={"Content-Disposition": "attachment; filename=Elston_Index_Report.docx"}
        )
    except Exception as e:
        logger.exception("Elston report failed")
        return JSONResponse(status_code=400, content={"status": "error", "message": str(e)})


@app.post("/export_elston")
@limiter.limit(config.REPORT_RATE_LIMIT)
async def export_elston(
    request: Request,
    file: UploadFile = File(...),
    traits: List[str] = Form(...),
    geno_col: str = Form(..., max_length=100),
    env_col: str = Form(None, max_length=100),
    rep_col: str = Form(None, max_length=100),
    means: str = Form("single", max_length=10),
    model: str = Form("gxe", max_length=10),
    lb: str = Form("min", max_length=20)
):
    try:
        params = ElstonParams(traits=traits, geno_col=geno_col, env_col=env_col, rep_col=rep_col,
                              means=means, model=model, lb=lb)
        analyzer = await perform_elston_analysis(file, params)
        return StreamingResponse(
            analyzer.create_excel(),
            media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            headers={"Content-Disposition": "attachment; filename=Elston_Index_Output.xlsx"}
        )
    except Exception as e:
        logger.exception("Elston export failed")
        return JSONResponse(status_code=400, content={"status": "error", "message": str(e)})


# Tai Stability Endpoints
from met_analysis.api.tai_endpoints import (
    analyze_tai,
    generate_tai_plot,
    report_tai
)

app.post("/analyze_tai")(analyze_tai)
app.post("/generate_tai_plot")(generate_tai_plot)
app.post("/report_tai")(report_tai)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="127.0.0.1", port=8000)
