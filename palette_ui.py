#!/usr/bin/env python3
"""Palette viewer GUI - open a photo, compute its k-means palette, and save it."""

import logging
import threading
import tkinter as tk
from pathlib import Path
from tkinter import filedialog, messagebox, ttk

from PIL import Image, ImageTk

from kmeans_palette import PaletteError, cluster_source
from palette_io import PILImageSource, palette_output_path, rgb_hex, save_palette

logger = logging.getLogger(__name__)

SLIDER_MAX_COLORS = 64


def swatch_text_color(rgb) -> str:
    """Label color that stays readable on top of a swatch."""
    r, g, b = rgb
    return "white" if (r + g + b) / 3 < 128 else "black"


def compute_palette(source, k, on_done, on_error):
    """Run the engine and report to exactly one of the two callbacks."""
    try:
        result = cluster_source(source, k)
    except PaletteError as e:
        logger.warning("palette failed: %s", e)
        on_error(str(e))
        return
    except Exception as e:
        logger.exception("palette computation crashed")
        on_error(f"Unexpected error: {e}")
        return
    on_done(result)


class PaletteViewerApp:
    def __init__(self, root):
        self.root = root
        self.root.title("Palette")
        self.root.geometry("1000x700")

        self.original_image = None
        self.image_path = None
        self.current_palette = None
        self.current_k = None
        self.processing = False

        self.setup_ui()

    def setup_ui(self):
        main_frame = ttk.Frame(self.root, padding=10)
        main_frame.pack(fill=tk.BOTH, expand=True)

        controls = ttk.Frame(main_frame)
        controls.pack(fill=tk.X, pady=(0, 10))

        ttk.Button(controls, text="Open Image", command=self.open_image).pack(side=tk.LEFT, padx=5)

        ttk.Label(controls, text="Colors:").pack(side=tk.LEFT, padx=(20, 5))
        self.n_colors = tk.IntVar(value=8)
        self.color_slider = ttk.Scale(controls, from_=2, to=SLIDER_MAX_COLORS, variable=self.n_colors,
                                      orient=tk.HORIZONTAL, length=200, command=self.on_slider_change)
        self.color_slider.pack(side=tk.LEFT, padx=5)
        self.color_label = ttk.Label(controls, text="8")
        self.color_label.pack(side=tk.LEFT, padx=5)

        ttk.Button(controls, text="Generate", command=self.generate).pack(side=tk.LEFT, padx=(20, 5))
        ttk.Button(controls, text="Save Palette", command=self.save_palette).pack(side=tk.LEFT, padx=5)

        orig_frame = ttk.LabelFrame(main_frame, text="Original", padding=5)
        orig_frame.pack(fill=tk.BOTH, expand=True)
        self.orig_canvas = tk.Canvas(orig_frame, bg="#333")
        self.orig_canvas.pack(fill=tk.BOTH, expand=True)

        self.palette_frame = ttk.LabelFrame(main_frame, text="Palette", padding=5)
        self.palette_frame.pack(fill=tk.X, pady=(10, 0))
        self.palette_canvas = tk.Canvas(self.palette_frame, height=60, bg="#222")
        self.palette_canvas.pack(fill=tk.X)

        self.status = ttk.Label(main_frame, text="Open an image to get started")
        self.status.pack(fill=tk.X, pady=(10, 0))

    def on_slider_change(self, event=None):
        self.color_label.config(text=str(int(self.n_colors.get())))

    def open_image(self):
        filetypes = [
            ("Image files", "*.jpg *.jpeg *.png *.gif *.bmp *.webp"),
            ("All files", "*.*")
        ]
        path = filedialog.askopenfilename(filetypes=filetypes)
        if not path:
            return
        try:
            with Image.open(path) as img:
                self.original_image = img.convert("RGB")
        except OSError as e:
            messagebox.showerror("Cannot open image", str(e))
            return
        self.image_path = Path(path)
        self.current_palette = None
        self.display_original()
        self.palette_canvas.delete("all")
        self.status.config(text=f"Loaded: {self.image_path.name} "
                                f"({self.original_image.width}x{self.original_image.height})")

    def display_original(self):
        if self.original_image is None:
            return
        self.root.update_idletasks()
        canvas_w = self.orig_canvas.winfo_width()
        canvas_h = self.orig_canvas.winfo_height()
        if canvas_w < 10 or canvas_h < 10:
            canvas_w, canvas_h = 400, 400

        img = self.original_image.copy()
        img.thumbnail((canvas_w, canvas_h), Image.Resampling.LANCZOS)
        self.orig_photo = ImageTk.PhotoImage(img)
        self.orig_canvas.delete("all")
        self.orig_canvas.create_image(canvas_w // 2, canvas_h // 2, image=self.orig_photo)

    def generate(self):
        if self.original_image is None or self.processing:
            return

        k = int(self.n_colors.get())
        source = PILImageSource(self.original_image)
        self.processing = True
        self.status.config(text=f"Computing {k} colors...")
        self.root.update()

        def process():
            compute_palette(source, k,
                            on_done=lambda result: self.root.after(0, lambda: self.finish_generate(result, k)),
                            on_error=lambda message: self.root.after(0, lambda: self.fail_generate(message)))

        threading.Thread(target=process, daemon=True).start()

    def fail_generate(self, message):
        self.processing = False
        self.status.config(text="No palette")
        messagebox.showerror("Palette", message)

    def finish_generate(self, result, k):
        self.current_palette = result.palette
        self.current_k = k
        self.display_palette(self.current_palette)
        self.processing = False
        unused = len(result.unused_clusters)
        note = f", {unused} unused" if unused else ""
        self.status.config(text=f"{k} colors, {result.iterations} iterations{note}")

    def display_palette(self, palette):
        self.palette_canvas.delete("all")
        w = max(self.palette_canvas.winfo_width(), 10)
        n = len(palette)
        box_w = max(1, min(60, w // n))
        for i, rgb in enumerate(palette):
            color = rgb_hex(rgb)
            x0 = i * box_w
            self.palette_canvas.create_rectangle(x0, 0, x0 + box_w - 2, 58, fill=color, outline="")
            if box_w >= 40:
                self.palette_canvas.create_text(x0 + box_w // 2, 30, text=color,
                                                fill=swatch_text_color(rgb), font=("monospace", 7))

    def save_palette(self):
        if self.current_palette is None:
            messagebox.showwarning("No palette", "Generate a palette first")
            return

        default_name = palette_output_path(self.image_path, self.current_k).name
        path = filedialog.asksaveasfilename(
            defaultextension=".png",
            initialfile=Path(default_name).with_suffix(".png").name,
            filetypes=[("PNG", "*.png"), ("All files", "*.*")]
        )
        if not path:
            return
        try:
            save_palette(self.current_palette, path)
        except (OSError, ValueError) as e:
            messagebox.showerror("Cannot save palette", str(e))
            return
        self.status.config(text=f"Saved: {path}")


def main():
    logging.basicConfig(level=logging.INFO)
    root = tk.Tk()
    app = PaletteViewerApp(root)
    root.mainloop()


if __name__ == "__main__":
    main()
