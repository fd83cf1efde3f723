import json
import logging
import time

from flask import Flask, request, jsonify
from pydantic import ValidationError

import config
from key_bridge import EnvKeyBridge
from models import (
    ASPECT_RATIOS,
    CATEGORY_DATA,
    DEFAULT_FORM,
    RESOLUTIONS,
    WORKER_DATA,
    GenerationRequest,
    resolution_label,
)
from pipeline import ApiKeyStatus, ErrorKind, PipelineBusyError, PipelineOrchestrator

logger = logging.getLogger(__name__)

app = Flask(__name__)

orchestrator = PipelineOrchestrator(EnvKeyBridge())


def form_options():
    return {
        "brand": config.PRODUCT_BRAND,
        "max_retries": orchestrator.max_retries,
        "billing_url": config.BILLING_DOCS_URL,
        "defaults": DEFAULT_FORM,
        "categories": [{**c, "id": c["id"].value} for c in CATEGORY_DATA],
        "workers": [{**w, "id": w["id"].value} for w in WORKER_DATA],
        "aspect_ratios": ASPECT_RATIOS,
        "resolutions": [{"value": r, "label": resolution_label(r)} for r in RESOLUTIONS],
    }


@app.route("/")
def index():
    return HTML_PAGE.replace(
        "/*__FORM_OPTIONS__*/",
        json.dumps(form_options(), ensure_ascii=False),
    )


@app.route("/api/state")
async def pipeline_state():
    if orchestrator.state.api_key_status is ApiKeyStatus.UNKNOWN:
        await orchestrator.check_api_key()
    return jsonify(orchestrator.state.to_dict())


@app.route("/api/key", methods=["POST"])
async def select_key():
    data = request.get_json(silent=True) or {}
    status = await orchestrator.select_key(data.get("api_key"))
    return jsonify({"api_key_status": status.value})


@app.route("/api/generate", methods=["POST"])
async def generate():
    data = request.get_json(silent=True) or {}

    try:
        gen_request = GenerationRequest.model_validate(data)
    except ValidationError as e:
        error = e.errors()[0]
        field = ".".join(str(loc) for loc in error["loc"])
        return jsonify({"error": f"{field}: {error['msg']}"}), 400

    if orchestrator.state.api_key_status is ApiKeyStatus.ABSENT:
        return jsonify({"error": "Select an API key first", "api_key_status": ApiKeyStatus.ABSENT.value}), 401

    try:
        start = time.time()
        result = await orchestrator.submit(gen_request)
        elapsed = round(time.time() - start, 1)
    except PipelineBusyError as e:
        return jsonify({"error": str(e)}), 409

    state = orchestrator.state
    if result is None:
        status = 401 if state.error_kind is ErrorKind.AUTH_INVALID else 502
        return jsonify({
            "error": state.error,
            "error_kind": state.error_kind.value,
            "api_key_status": state.api_key_status.value,
            "elapsed": elapsed,
        }), status

    return jsonify({**result.model_dump(), "elapsed": elapsed})


HTML_PAGE = r"""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>Mini-Lab</title>
<style>
  *, *::before, *::after { box-sizing: border-box; margin: 0; padding: 0; }

  body {
    font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
    background: #0f0f0f;
    color: #e0e0e0;
    min-height: 100vh;
  }

  .hidden { display: none !important; }

  .top-bar {
    height: 64px;
    padding: 0 24px;
    border-bottom: 1px solid #1e1e1e;
    display: flex;
    align-items: center;
    justify-content: space-between;
  }
  .top-bar h1 { font-size: 1.2rem; font-weight: 700; color: #fff; letter-spacing: -0.5px; }
  .top-bar h1 span { color: #8b5cf6; }

  .split-layout {
    display: flex;
    gap: 24px;
    max-width: 1200px;
    margin: 0 auto;
    padding: 24px;
  }

  .panel {
    flex: 1;
    background: #141414;
    border: 1px solid #1e1e1e;
    border-radius: 12px;
    padding: 20px 24px;
    display: flex;
    flex-direction: column;
    gap: 20px;
  }

  .panel h3 {
    font-size: 0.72rem;
    color: #888;
    text-transform: uppercase;
    letter-spacing: 0.5px;
    margin-bottom: 8px;
  }

  .choices { display: flex; gap: 8px; }

  .choice {
    flex: 1;
    background: #1a1a1a;
    color: #aaa;
    border: 1px solid #2a2a2a;
    border-radius: 10px;
    padding: 12px 8px;
    font-size: 0.8rem;
    text-align: center;
    cursor: pointer;
    transition: border-color 0.2s, background 0.2s;
  }
  .choice:hover { border-color: #8b5cf6; }
  .choice.active { border-color: #8b5cf6; background: #1e1a2e; color: #fff; }
  .choice .icon { font-size: 1.4rem; display: block; margin-bottom: 4px; }
  .choice .desc { font-size: 0.65rem; color: #777; display: block; margin-top: 2px; }

  input[type=text], select {
    width: 100%;
    background: #1a1a1a;
    color: #e0e0e0;
    border: 1px solid #2a2a2a;
    border-radius: 8px;
    padding: 10px 12px;
    font-size: 0.9rem;
    font-family: inherit;
    outline: none;
    transition: border-color 0.2s;
  }
  input[type=text]:focus, select:hover, select:focus { border-color: #8b5cf6; }

  .row { display: flex; gap: 12px; }
  .row > section { flex: 1; }

  button {
    background: #8b5cf6;
    color: #fff;
    border: none;
    border-radius: 8px;
    padding: 8px 20px;
    font-size: 0.82rem;
    font-weight: 500;
    cursor: pointer;
    transition: background 0.2s, opacity 0.2s;
  }
  button:hover { background: #7c3aed; }
  button:disabled { opacity: 0.5; cursor: not-allowed; }

  .ghost-btn {
    background: transparent;
    color: #888;
    border: 1px solid #2a2a2a;
    border-radius: 999px;
    font-size: 0.65rem;
    font-weight: 700;
    letter-spacing: 1px;
    padding: 6px 14px;
  }
  .ghost-btn:hover { background: transparent; color: #8b5cf6; border-color: #8b5cf6; }

  #generateBtn { width: 100%; padding: 14px; font-size: 0.95rem; font-weight: 700; }

  .output-card {
    background: #1a1a1a;
    border: 1px solid #2a2a2a;
    border-radius: 10px;
    padding: 16px;
    min-height: 320px;
    display: flex;
    flex-direction: column;
    align-items: center;
    justify-content: center;
    gap: 14px;
    line-height: 1.6;
    font-size: 0.9rem;
    text-align: center;
  }
  .output-card.error { border-color: #ef4444; color: #fca5a5; background: #1a1111; }
  .output-card img { max-width: 100%; border-radius: 8px; }

  .prompt-text {
    white-space: pre-wrap;
    word-break: break-word;
    text-align: left;
    font-size: 0.78rem;
    color: #aaa;
    background: #111;
    border-radius: 8px;
    padding: 12px;
    width: 100%;
  }

  .status {
    font-size: 0.78rem;
    color: #888;
    min-height: 1.2em;
  }
  .status .timer { color: #8b5cf6; font-variant-numeric: tabular-nums; }

  .loading {
    display: flex;
    align-items: center;
    gap: 10px;
    color: #888;
  }
  .spinner {
    width: 16px; height: 16px;
    border: 2px solid #333;
    border-top-color: #8b5cf6;
    border-radius: 50%;
    animation: spin 0.8s linear infinite;
  }
  @keyframes spin { to { transform: rotate(360deg); } }

  .key-screen {
    min-height: 100vh;
    display: flex;
    align-items: center;
    justify-content: center;
    padding: 16px;
  }
  .key-card {
    max-width: 420px;
    width: 100%;
    background: #141414;
    border: 1px solid #1e1e1e;
    border-radius: 16px;
    padding: 32px;
    text-align: center;
    display: flex;
    flex-direction: column;
    gap: 16px;
  }
  .key-card h2 { color: #fff; font-size: 1.3rem; }
  .key-card p { color: #888; font-size: 0.82rem; line-height: 1.5; }
  .key-card a { color: #8b5cf6; font-size: 0.7rem; }
</style>
</head>
<body>

<!-- ── API key selection ── -->
<div id="keyScreen" class="key-screen hidden">
  <div class="key-card">
    <h2>API Key</h2>
    <p>
      The mini-lab uses a paid Gemini API key for high-resolution image generation
      and real-time product search.<br>
      <a id="billingLink" target="_blank" rel="noreferrer">Billing setup guide</a>
    </p>
    <input id="apiKeyInput" type="text" placeholder="Paste a Gemini API key (blank reloads .env)">
    <button id="selectKeyBtn" onclick="selectKey()">Select API Key</button>
    <div id="keyStatus" class="status"></div>
  </div>
</div>

<!-- ── Main screen ── -->
<div id="mainScreen" class="hidden">
  <div class="top-bar">
    <h1><span id="brandName"></span> <span>MINI-LAB</span></h1>
    <button class="ghost-btn" onclick="showKeyScreen()">KEY CONFIG</button>
  </div>

  <div class="split-layout">
    <div class="panel">
      <section>
        <h3>Category</h3>
        <div id="categoryChoices" class="choices"></div>
      </section>
      <section>
        <h3>Product name</h3>
        <input id="productName" type="text" placeholder="바이오메가, 헬스팩, 코퀴논...">
      </section>
      <section>
        <h3>Worker concept</h3>
        <div id="workerChoices" class="choices"></div>
      </section>
      <div class="row">
        <section>
          <h3>Aspect ratio</h3>
          <select id="aspectRatio"></select>
        </section>
        <section>
          <h3>Resolution</h3>
          <select id="resolution"></select>
        </section>
      </div>
      <button id="generateBtn" onclick="generate()">Generate</button>
      <div id="status" class="status"></div>
    </div>

    <div class="panel">
      <div style="display:flex;align-items:center;justify-content:space-between">
        <h3 style="margin:0">Result</h3>
        <button id="exportBtn" class="ghost-btn hidden" onclick="exportImage()">EXPORT</button>
      </div>
      <div id="output" class="output-card">
        <span style="color:#777">Enter a product name and start creating. The real pill shape, color and ingredients are rendered as high-resolution miniature art.</span>
      </div>
    </div>
  </div>
</div>

<script>
  const OPTIONS = /*__FORM_OPTIONS__*/;

  const keyScreenEl = document.getElementById('keyScreen');
  const mainScreenEl = document.getElementById('mainScreen');
  const productNameEl = document.getElementById('productName');
  const aspectRatioEl = document.getElementById('aspectRatio');
  const resolutionEl = document.getElementById('resolution');
  const generateBtn = document.getElementById('generateBtn');
  const statusEl = document.getElementById('status');
  const outputEl = document.getElementById('output');
  const exportBtn = document.getElementById('exportBtn');

  const form = { ...OPTIONS.defaults };
  let isLoading = false;
  let result = null;

  // ── Screens ──
  function showKeyScreen() {
    keyScreenEl.classList.remove('hidden');
    mainScreenEl.classList.add('hidden');
  }

  function showMainScreen() {
    keyScreenEl.classList.add('hidden');
    mainScreenEl.classList.remove('hidden');
  }

  async function loadState() {
    const res = await fetch('/api/state');
    return res.json();
  }

  async function selectKey() {
    const btn = document.getElementById('selectKeyBtn');
    const keyStatusEl = document.getElementById('keyStatus');
    btn.disabled = true;
    try {
      const res = await fetch('/api/key', {
        method: 'POST',
        headers: { 'Content-Type': 'application/json' },
        body: JSON.stringify({ api_key: document.getElementById('apiKeyInput').value || null }),
      });
      const data = await res.json();
      if (data.api_key_status === 'present') {
        keyStatusEl.textContent = '';
        showMainScreen();
      } else {
        keyStatusEl.textContent = 'No API key is selected yet.';
      }
    } finally {
      btn.disabled = false;
    }
  }

  // ── Form ──
  function renderChoices(containerId, items, field) {
    const container = document.getElementById(containerId);
    container.innerHTML = '';
    items.forEach(item => {
      const btn = document.createElement('div');
      btn.className = 'choice' + (form[field] === item.id ? ' active' : '');
      btn.innerHTML = '<span class="icon"></span><span class="label"></span>' + (item.desc ? '<span class="desc"></span>' : '');
      btn.querySelector('.icon').textContent = item.icon;
      btn.querySelector('.label').textContent = item.label;
      if (item.desc) btn.querySelector('.desc').textContent = item.desc;
      btn.addEventListener('click', () => {
        form[field] = item.id;
        renderChoices(containerId, items, field);
      });
      container.appendChild(btn);
    });
  }

  function updateGenerateBtn() {
    generateBtn.disabled = isLoading || !form.product_name.trim();
    generateBtn.textContent = isLoading ? 'Generating...' : 'Generate';
  }

  function initForm() {
    document.getElementById('brandName').textContent = OPTIONS.brand;
    document.getElementById('billingLink').href = OPTIONS.billing_url;

    renderChoices('categoryChoices', OPTIONS.categories, 'category');
    renderChoices('workerChoices', OPTIONS.workers, 'worker_concept');

    OPTIONS.aspect_ratios.forEach(r => aspectRatioEl.add(new Option(r, r)));
    OPTIONS.resolutions.forEach(r => resolutionEl.add(new Option(r.label, r.value)));
    aspectRatioEl.value = form.aspect_ratio;
    resolutionEl.value = form.resolution;
    productNameEl.value = form.product_name;

    aspectRatioEl.addEventListener('change', () => form.aspect_ratio = aspectRatioEl.value);
    resolutionEl.addEventListener('change', () => form.resolution = resolutionEl.value);
    productNameEl.addEventListener('input', () => {
      form.product_name = productNameEl.value;
      updateGenerateBtn();
    });
    updateGenerateBtn();
  }

  // ── Progress polling ──
  function createPoller() {
    let interval = null;
    let stopped = true;
    return {
      start() {
        const t0 = Date.now();
        clearInterval(interval);
        stopped = false;
        interval = setInterval(async () => {
          const s = ((Date.now() - t0) / 1000).toFixed(1);
          let retryNote = '';
          try {
            const state = await loadState();
            if (state.retry_count > 0) {
              retryNote = ' (server busy, retry ' + state.retry_count + '/' + OPTIONS.max_retries + ')';
            }
          } catch (e) { /* next tick */ }
          if (stopped) return;
          statusEl.innerHTML = '<span class="timer">' + s + 's</span> researching and rendering...' + retryNote;
        }, 500);
      },
      stop() { stopped = true; clearInterval(interval); interval = null; }
    };
  }
  const poller = createPoller();

  // ── Result / error panes ──
  function renderResult(data) {
    result = data;
    outputEl.className = 'output-card';
    outputEl.innerHTML = '';
    const img = document.createElement('img');
    img.src = data.image_url;
    img.alt = OPTIONS.brand + ' miniature';
    const prompt = document.createElement('div');
    prompt.className = 'prompt-text';
    prompt.textContent = data.prompt_text;
    outputEl.appendChild(img);
    outputEl.appendChild(prompt);
    exportBtn.classList.remove('hidden');
  }

  function renderError(message) {
    outputEl.className = 'output-card error';
    outputEl.innerHTML = '';
    const msg = document.createElement('div');
    msg.textContent = message;
    const retryBtn = document.createElement('button');
    retryBtn.textContent = 'Try again';
    retryBtn.addEventListener('click', generate);
    outputEl.appendChild(msg);
    outputEl.appendChild(retryBtn);
  }

  function exportImage() {
    if (!result) return;
    const link = document.createElement('a');
    link.href = result.image_url;
    link.download = OPTIONS.brand.toLowerCase() + '-lab-' + form.product_name + '.png';
    link.click();
  }

  async function generate() {
    if (isLoading || !form.product_name.trim()) return;

    isLoading = true;
    updateGenerateBtn();
    outputEl.className = 'output-card';
    outputEl.innerHTML = '<div class="loading"><div class="spinner"></div>Searching product data and building the scene...</div>';
    poller.start();

    try {
      const res = await fetch('/api/generate', {
        method: 'POST',
        headers: { 'Content-Type': 'application/json' },
        body: JSON.stringify(form),
      });
      const data = await res.json();
      poller.stop();
      if (!res.ok || data.error) {
        statusEl.textContent = '';
        if (data.api_key_status === 'absent') {
          showKeyScreen();
          document.getElementById('keyStatus').textContent = data.error;
        }
        renderError(data.error || 'HTTP ' + res.status);
        return;
      }
      renderResult(data);
      statusEl.innerHTML = 'Completed in <span class="timer">' + data.elapsed + 's</span>';
    } catch (e) {
      poller.stop();
      statusEl.textContent = '';
      renderError(e.message);
    } finally {
      isLoading = false;
      updateGenerateBtn();
    }
  }

  (async () => {
    initForm();
    const state = await loadState();
    if (state.api_key_status === 'present') showMainScreen();
    else showKeyScreen();
  })();
</script>
</body>
</html>
"""

if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )
    app.run(debug=True, port=config.PORT, threaded=True)
