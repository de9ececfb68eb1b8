CONSOLE_TITLE = "Filedrop Console"


def ui_html() -> str:
    return (
        """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>__TITLE__</title>
<style>
  html { font: 15px/1.45 system-ui, -apple-system, "Helvetica Neue", Arial, sans-serif; }
  body { margin: 0; background: #eef1f4; color: #22272e; }
  header { background: #24313f; color: #f0f4f8; padding: 14px 24px; display: flex; align-items: baseline; gap: 16px; }
  header h1 { font-size: 1.15rem; margin: 0; letter-spacing: 0.02em; }
  header small { color: #9fb3c8; }
  main { display: grid; grid-template-columns: 2fr 1fr; gap: 18px; padding: 18px 24px; }
  @media (max-width: 820px) { main { grid-template-columns: 1fr; } }
  .panel { background: #fff; border-radius: 6px; box-shadow: 0 1px 3px rgba(20, 30, 40, 0.12); padding: 14px 16px; }
  .panel h2 { font-size: 0.95rem; margin: 0 0 10px; text-transform: uppercase; color: #52606d; }
  #fileTable { width: 100%; border-spacing: 0; }
  #fileTable th { font-weight: 600; font-size: 0.8rem; color: #7b8794; text-align: left; padding: 4px 6px; }
  #fileTable td { padding: 6px; border-top: 1px solid #e4e7eb; vertical-align: middle; }
  #fileTable td.num { text-align: right; font-variant-numeric: tabular-nums; }
  a { color: #2680c2; text-decoration: none; }
  a:hover { text-decoration: underline; }
  .btn { cursor: pointer; border: 0; border-radius: 4px; padding: 6px 12px; background: #2680c2; color: #fff; }
  .btn.remove { background: transparent; color: #cf1124; padding: 2px 6px; }
  .btn:disabled { opacity: 0.5; cursor: default; }
  .row { display: flex; gap: 8px; align-items: center; margin-bottom: 8px; flex-wrap: wrap; }
  .row input[type=number] { width: 120px; padding: 4px 6px; }
  .bar { height: 6px; background: #e4e7eb; border-radius: 3px; overflow: hidden; margin: 2px 0 8px; }
  .bar > span { display: block; height: 100%; background: #3ebd93; width: 0; transition: width 0.2s; }
  .bar.failed > span { background: #cf1124; }
  #progress li { font-size: 0.85rem; list-style: none; }
  #progress { padding: 0; margin: 0; }
  #events { font: 12px/1.4 ui-monospace, Menlo, monospace; max-height: 220px; overflow: auto; white-space: pre-wrap; color: #52606d; }
</style>
</head>
<body>
<header><h1>__TITLE__</h1><small>files are sent in chunks and assembled on the server</small></header>
<main>
  <section class="panel">
    <h2>Files</h2>
    <table id="fileTable">
      <thead><tr><th>Name</th><th>Type</th><th>Bytes</th><th>Modified</th><th></th></tr></thead>
      <tbody id="files"><tr><td colspan="5">loading...</td></tr></tbody>
    </table>
  </section>
  <aside>
    <section class="panel">
      <h2>Upload</h2>
      <div class="row"><input id="picker" type="file" multiple></div>
      <div class="row">
        <label for="chunkBytes">chunk bytes</label>
        <input id="chunkBytes" type="number" min="1" value="1048576">
        <label for="parallel">parallel</label>
        <input id="parallel" type="number" min="1" max="16" value="4">
      </div>
      <div class="row"><button class="btn" id="uploadBtn">Upload</button></div>
      <ul id="progress"></ul>
    </section>
    <section class="panel">
      <h2>Events</h2>
      <div id="events"></div>
    </section>
  </aside>
</main>
<script>
  const el = (id) => document.getElementById(id);
  const esc = (s) => String(s).replace(/[&<>"']/g, (c) => "&#" + c.charCodeAt(0) + ";");

  function note(text, detail) {
    const stamp = new Date().toLocaleTimeString();
    el("events").textContent = `${stamp} ${text}${detail ? " " + JSON.stringify(detail) : ""}\\n` + el("events").textContent;
  }

  async function call(path, init) {
    const res = await fetch(path, init);
    const body = await res.json().catch(() => null);
    if (res.ok) return body;
    const err = new Error((body && body.detail) || res.statusText);
    err.status = res.status;
    err.retryAction = body ? body.retry_action : null;
    throw err;
  }

  async function loadFiles() {
    const { files } = await call("/v1/files");
    if (!files.length) {
      el("files").innerHTML = '<tr><td colspan="5">no files yet</td></tr>';
      return;
    }
    el("files").innerHTML = files.map((f) => {
      const q = encodeURIComponent(f.name);
      const open = f.previewable ? `<a href="/v1/files/${q}/preview" target="_blank">${esc(f.name)}</a>` : esc(f.name);
      return `<tr><td>${open}</td><td>${esc(f.media_type)}</td><td class="num">${f.size_bytes}</td>` +
        `<td>${new Date(f.modified_at).toLocaleString()}</td>` +
        `<td><a href="/v1/files/${q}/download">download</a>` +
        `<button class="btn remove" data-file="${esc(f.name)}">remove</button></td></tr>`;
    }).join("");
    document.querySelectorAll("button.remove").forEach((b) => { b.onclick = () => removeFile(b.dataset.file); });
  }

  async function removeFile(name) {
    if (!confirm(`Remove ${name}?`)) return;
    try {
      await call(`/v1/files/${encodeURIComponent(name)}`, { method: "DELETE" });
      note("removed", { file_name: name });
    } catch (err) {
      note("remove failed", { file_name: name, detail: err.message });
    }
    await loadFiles();
  }

  function progressRow(name) {
    const li = document.createElement("li");
    li.innerHTML = `${esc(name)} <span class="count"></span><div class="bar"><span></span></div>`;
    el("progress").prepend(li);
    return {
      update(done, total) {
        li.querySelector(".count").textContent = `${done}/${total}`;
        li.querySelector(".bar > span").style.width = `${Math.round((100 * done) / total)}%`;
      },
      fail() { li.querySelector(".bar").classList.add("failed"); },
    };
  }

  async function putChunk(name, index, total, blob) {
    const url = `/v1/files/${encodeURIComponent(name)}/chunks/${index}?total_chunks=${total}`;
    for (let attempt = 1; ; attempt++) {
      try {
        return await call(url, { method: "PUT", body: blob });
      } catch (err) {
        const retryable = err.status === 429 || err.retryAction === "retry_chunk";
        if (!retryable || attempt >= 4) throw err;
        await new Promise((r) => setTimeout(r, 250 * attempt));
      }
    }
  }

  async function sendFile(file) {
    const size = Math.max(1, Number(el("chunkBytes").value) || 1048576);
    const lanes = Math.min(16, Math.max(1, Number(el("parallel").value) || 4));
    const total = Math.max(1, Math.ceil(file.size / size));
    const row = progressRow(file.name);
    let next = 0;
    let done = 0;
    let completed = null;
    row.update(0, total);

    async function lane() {
      while (next < total) {
        const index = next++;
        const reply = await putChunk(file.name, index, total, file.slice(index * size, (index + 1) * size));
        if (reply.status === "UPLOAD_COMPLETED") completed = reply;
        row.update(++done, total);
      }
    }

    try {
      await Promise.all(Array.from({ length: Math.min(lanes, total) }, lane));
      note("uploaded", completed || { file_name: file.name });
    } catch (err) {
      row.fail();
      note(err.retryAction === "restart_upload" ? "upload must be restarted" : "upload failed",
        { file_name: file.name, detail: err.message });
    }
  }

  el("uploadBtn").onclick = async () => {
    el("uploadBtn").disabled = true;
    try {
      for (const file of el("picker").files) await sendFile(file);
    } finally {
      el("uploadBtn").disabled = false;
      await loadFiles();
    }
  };

  loadFiles().catch((err) => note("could not list files", { detail: err.message }));
</script>
</body>
</html>
"""
    ).replace("__TITLE__", CONSOLE_TITLE)
