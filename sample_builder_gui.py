"""
Coursework Sample Builder - GUI Application
Front end for merging each student's PDFs by category and for the course setup workflows
"""

import tkinter as tk
from tkinter import ttk, filedialog, messagebox
import threading
from collections import deque
import os
import platform
import subprocess
from declarations import DeclarationProcessor, WordToPdfConverter
from folder_populator import FolderPopulator
from roster import ClassroomExport
from sample_engine import DEFAULT_BATCH_SIZE, StudentMergeCoordinator
from sheets import Workbook
from storage import CollisionPolicy, LocalFileService

_LOG_MAX_LINES = 5000
_LOG_TRIM_LINES = 1000

WORKFLOW_MERGE = "Merge PDFs for all students"
WORKFLOW_ROSTER = "Initialize roster and folders"
WORKFLOW_TEMPLATES = "Populate folders with templates"
WORKFLOW_ATTACHMENTS = "Collect assignment attachments"
WORKFLOW_DECLARATIONS = "Create final declaration forms"

WORKFLOWS = [
    WORKFLOW_MERGE,
    WORKFLOW_ROSTER,
    WORKFLOW_TEMPLATES,
    WORKFLOW_ATTACHMENTS,
    WORKFLOW_DECLARATIONS,
]

# Workflows that need the roster export and Word conversion respectively.
_ROSTER_WORKFLOWS = {WORKFLOW_ROSTER, WORKFLOW_ATTACHMENTS, WORKFLOW_DECLARATIONS}
_CONVERSION_WORKFLOWS = {WORKFLOW_DECLARATIONS}


class SampleBuilderGUI:
    def __init__(self, root):
        self.root = root
        self.root.title("Coursework Sample Builder v1.0")
        self.root.geometry("900x780")
        self.root.resizable(True, True)

        # Variables
        self.workbook_folder = tk.StringVar()
        self.store_root = tk.StringVar()
        self.roster_export = tk.StringVar()
        self.destination = tk.StringVar()
        self.workflow = tk.StringVar(value=WORKFLOW_MERGE)
        self.batch_size = tk.IntVar(value=DEFAULT_BATCH_SIZE)
        self.collision_policy = tk.StringVar(value=CollisionPolicy.SKIP.value)
        self.recursive = tk.BooleanVar(value=False)
        self.course_url = tk.StringVar()
        self.assignment_title = tk.StringVar()
        self.prepend = tk.StringVar()

        self.warning_count_var = tk.IntVar(value=0)
        self.recent_paths_var = tk.StringVar(value="Recent warnings: none")
        self.recent_paths = deque(maxlen=10)

        self.is_processing = False
        self.cancel_event = threading.Event()
        self._run_thread = None

        # Build UI
        self.create_widgets()
        self._check_word_availability()

        self.root.protocol("WM_DELETE_WINDOW", self._on_window_close)

    def create_widgets(self):
        """Create all UI widgets"""

        # Header
        header_frame = tk.Frame(self.root, bg='#2E86AB', height=60)
        header_frame.pack(fill=tk.X)
        header_frame.pack_propagate(False)

        tk.Label(
            header_frame,
            text="Coursework Sample Builder",
            font=('Arial', 18, 'bold'),
            bg='#2E86AB',
            fg='white'
        ).pack(pady=15)

        content_frame = tk.Frame(self.root, padx=20, pady=20)
        content_frame.pack(fill=tk.BOTH, expand=True)
        content_frame.grid_columnconfigure(0, weight=1)
        content_frame.grid_rowconfigure(11, weight=1)

        paths_frame = tk.LabelFrame(content_frame, text="Locations", padx=10, pady=10)
        paths_frame.grid(row=0, column=0, sticky='ew', pady=(0, 10))
        paths_frame.grid_columnconfigure(1, weight=1)

        self._path_row(paths_frame, 0, "Workbook Folder:", self.workbook_folder, self.browse_workbook)
        self._path_row(paths_frame, 1, "Document Store:", self.store_root, self.browse_store)
        self._path_row(paths_frame, 2, "Roster Export:", self.roster_export, self.browse_roster)

        tk.Label(paths_frame, text="Destination Folder:").grid(row=3, column=0, sticky='w', pady=2)
        tk.Entry(paths_frame, textvariable=self.destination).grid(row=3, column=1, sticky='ew', padx=(10, 10))
        tk.Label(paths_frame, text="(in store; blank = each student folder)", fg='#666').grid(
            row=3, column=2, sticky='w'
        )

        workflow_frame = tk.LabelFrame(content_frame, text="Workflow", padx=10, pady=10)
        workflow_frame.grid(row=1, column=0, sticky='ew', pady=(0, 10))
        workflow_frame.grid_columnconfigure(1, weight=1)

        ttk.Combobox(
            workflow_frame, textvariable=self.workflow, values=WORKFLOWS, state='readonly', width=40
        ).grid(row=0, column=0, columnspan=2, sticky='w')

        tk.Label(workflow_frame, text="Course URL:").grid(row=1, column=0, sticky='w', pady=(8, 2))
        tk.Entry(workflow_frame, textvariable=self.course_url).grid(row=1, column=1, sticky='ew', pady=(8, 2))
        tk.Label(workflow_frame, text="Assignment Title:").grid(row=2, column=0, sticky='w', pady=2)
        tk.Entry(workflow_frame, textvariable=self.assignment_title).grid(row=2, column=1, sticky='ew', pady=2)
        tk.Label(workflow_frame, text="Prepend String:").grid(row=3, column=0, sticky='w', pady=2)
        tk.Entry(workflow_frame, textvariable=self.prepend).grid(row=3, column=1, sticky='ew', pady=2)

        settings_frame = tk.LabelFrame(content_frame, text="Settings", padx=10, pady=10)
        settings_frame.grid(row=2, column=0, sticky='ew', pady=(0, 10))

        tk.Label(settings_frame, text="Batch Size:").grid(row=0, column=0, sticky='w', padx=(0, 10))
        tk.Spinbox(settings_frame, from_=2, to=100, textvariable=self.batch_size, width=6).grid(
            row=0, column=1, sticky='w'
        )
        tk.Label(settings_frame, text="Existing Files:").grid(row=0, column=2, sticky='w', padx=(20, 10))
        ttk.Combobox(
            settings_frame,
            textvariable=self.collision_policy,
            values=[policy.value for policy in CollisionPolicy],
            state='readonly',
            width=10,
        ).grid(row=0, column=3, sticky='w')
        tk.Checkbutton(settings_frame, text="Scan subfolders", variable=self.recursive).grid(
            row=0, column=4, sticky='w', padx=(20, 0)
        )

        button_frame = tk.Frame(content_frame)
        button_frame.grid(row=3, column=0, sticky='ew', pady=(0, 10))
        button_frame.grid_columnconfigure(0, weight=3)
        button_frame.grid_columnconfigure(1, weight=1)

        self.start_button = tk.Button(
            button_frame,
            text="Start",
            command=self.start_run,
            bg='#2E86AB',
            fg='white',
            font=('Arial', 12, 'bold'),
            height=2,
            cursor='hand2'
        )
        self.start_button.grid(row=0, column=0, sticky='ew', padx=(0, 8))

        self.cancel_button = tk.Button(
            button_frame,
            text="Cancel",
            command=self._request_cancel,
            bg='#dc3545',
            fg='white',
            font=('Arial', 12, 'bold'),
            height=2,
            state='disabled',
        )
        self.cancel_button.grid(row=0, column=1, sticky='ew')

        self.status_label = tk.Label(content_frame, text="Status: Ready", fg='#666')
        self.status_label.grid(row=4, column=0, sticky='w', pady=(0, 5))

        self.progress = ttk.Progressbar(content_frame, mode='indeterminate')
        self.progress.grid(row=5, column=0, sticky='ew', pady=(0, 10))

        stats_frame = tk.Frame(content_frame)
        stats_frame.grid(row=6, column=0, sticky='ew')

        self.students_label = tk.Label(stats_frame, text="Students Processed: 0", fg='#666')
        self.students_label.grid(row=0, column=0, sticky='w')
        self.outputs_label = tk.Label(stats_frame, text="Outputs: 0", fg='#666')
        self.outputs_label.grid(row=0, column=1, sticky='w', padx=(20, 0))
        self.warnings_label = tk.Label(stats_frame, text="Warnings: 0", fg='#666')
        self.warnings_label.grid(row=0, column=2, sticky='w', padx=(20, 0))

        tk.Label(
            content_frame,
            textvariable=self.recent_paths_var,
            fg='#666',
            justify='left',
            anchor='w',
            wraplength=820,
        ).grid(row=7, column=0, sticky='ew', pady=(10, 5))

        tk.Label(content_frame, text="Live Run Log:", font=('Arial', 10, 'bold')).grid(
            row=10, column=0, sticky='w', pady=(4, 4)
        )

        log_frame = tk.Frame(content_frame)
        log_frame.grid(row=11, column=0, sticky='nsew')
        log_frame.grid_columnconfigure(0, weight=1)
        log_frame.grid_rowconfigure(0, weight=1)
        self.log_text = tk.Text(log_frame, height=12, wrap='word', state='disabled')
        self.log_text.grid(row=0, column=0, sticky='nsew')
        log_scroll = ttk.Scrollbar(log_frame, orient='vertical', command=self.log_text.yview)
        log_scroll.grid(row=0, column=1, sticky='ns')
        self.log_text.configure(yscrollcommand=log_scroll.set)

    @staticmethod
    def _path_row(parent, row, label, variable, command):
        tk.Label(parent, text=label).grid(row=row, column=0, sticky='w', pady=2)
        tk.Entry(parent, textvariable=variable, state='readonly').grid(row=row, column=1, sticky='ew', padx=(10, 10))
        tk.Button(parent, text="Browse...", command=command, width=10).grid(row=row, column=2, sticky='e')

    def _check_word_availability(self):
        """Note in the log when Word conversion workflows cannot run on this machine."""
        available, reason = WordToPdfConverter.is_available()
        if not available:
            self._append_log(f"[INFO] Word documents will not be converted: {reason}")

    def _on_window_close(self):
        """Handle window close (X button). Confirm if a run is in progress."""
        if self.is_processing:
            if messagebox.askyesno(
                "Run in progress",
                "A workflow is currently running.\n\nCancel it and close?",
            ):
                self.cancel_event.set()
                self.status_label.config(text="Status: Cancelling...", fg='#dc3545')
                if self._run_thread is not None:
                    self._run_thread.join(timeout=5)
                self.root.destroy()
        else:
            self.root.destroy()

    def _request_cancel(self):
        if not self.is_processing:
            return
        self.cancel_event.set()
        self.cancel_button.config(state='disabled', text='Cancelling...')
        self.status_label.config(text="Status: Cancelling...", fg='#dc3545')
        self._append_log("[INFO] Cancel requested. Stopping after the current student...")

    def browse_workbook(self):
        folder = filedialog.askdirectory(title="Select Workbook Folder")
        if folder:
            self.workbook_folder.set(folder)

    def browse_store(self):
        folder = filedialog.askdirectory(title="Select Document Store Folder")
        if folder:
            self.store_root.set(folder)

    def browse_roster(self):
        export_file = filedialog.askopenfilename(
            title="Select Roster Export",
            filetypes=[("JSON files", "*.json"), ("All files", "*.*")],
        )
        if export_file:
            self.roster_export.set(export_file)

    def _append_log(self, line):
        self.log_text.config(state='normal')
        self.log_text.insert(tk.END, line + "\n")
        line_count = int(self.log_text.index('end-1c').split('.')[0])
        if line_count > _LOG_MAX_LINES:
            self.log_text.delete('1.0', f'{_LOG_TRIM_LINES + 1}.0')
        self.log_text.see(tk.END)
        self.log_text.config(state='disabled')

    def _reset_live_state(self):
        self.warning_count_var.set(0)
        self.warnings_label.config(text="Warnings: 0")
        self.students_label.config(text="Students Processed: 0")
        self.outputs_label.config(text="Outputs: 0")
        self.recent_paths.clear()
        self.recent_paths_var.set("Recent warnings: none")
        self.log_text.config(state='normal')
        self.log_text.delete("1.0", tk.END)
        self.log_text.config(state='disabled')

    def _update_recent_paths(self):
        if not self.recent_paths:
            self.recent_paths_var.set("Recent warnings: none")
            return
        rendered = "\n".join(f"- {item}" for item in list(self.recent_paths))
        self.recent_paths_var.set(f"Recent warnings:\n{rendered}")

    def on_progress_update(self, current, total, message):
        try:
            self.root.after(0, self._handle_progress_update, current, total, message)
        except Exception:
            pass  # Window may have been destroyed

    def _handle_progress_update(self, current, total, message):
        self.status_label.config(text=f"Status: {message}", fg='#2E86AB')
        self.students_label.config(text=f"Students Processed: {current}/{max(total, 1)}")
        self._append_log(f"[PROGRESS] {message} ({current}/{total})")

    def on_run_event(self, payload):
        try:
            self.root.after(0, self._handle_run_event, payload)
        except Exception:
            pass  # Window may have been destroyed

    def _handle_run_event(self, payload):
        if not isinstance(payload, dict):
            return
        level = str(payload.get("level", "INFO")).upper()
        event = str(payload.get("event", "event"))
        message = str(payload.get("message", ""))
        context = payload.get("context", {}) or {}
        self._append_log(f"[{level}] {event}: {message}")

        if level in {"WARNING", "ERROR"}:
            self.warning_count_var.set(self.warning_count_var.get() + 1)
            self.warnings_label.config(text=f"Warnings: {self.warning_count_var.get()}")
            subject = context.get("file") or context.get("student")
            if subject:
                self.recent_paths.append(f"{subject}: {message}")
                self._update_recent_paths()

    def _validate(self):
        """Return an error message for the current inputs, or None."""
        try:
            if self.batch_size.get() < 2:
                raise ValueError("must be >= 2")
        except (tk.TclError, ValueError):
            return "Batch Size must be a whole number of at least 2."

        workflow = self.workflow.get()
        if not self.workbook_folder.get():
            return "Please select the workbook folder"
        if not self.store_root.get() or not os.path.isdir(self.store_root.get()):
            return "Please select an existing document store folder"
        if workflow in _ROSTER_WORKFLOWS and not os.path.isfile(self.roster_export.get()):
            return "This workflow needs a roster export file"
        if workflow == WORKFLOW_ROSTER and not self.course_url.get().strip():
            return "Please enter the course URL"
        if workflow in {WORKFLOW_ATTACHMENTS, WORKFLOW_DECLARATIONS} and not self.assignment_title.get().strip():
            return "Please enter the assignment title"
        if workflow == WORKFLOW_ATTACHMENTS and not self.prepend.get().strip():
            return "Please enter the string to prepend to the attachments"
        if workflow in _CONVERSION_WORKFLOWS:
            available, reason = WordToPdfConverter.is_available()
            if not available:
                return f"This workflow needs Microsoft Word.\n\n{reason}"
        return None

    def start_run(self):
        """Start the selected workflow"""
        if self.is_processing:
            return

        error = self._validate()
        if error:
            messagebox.showerror("Error", error)
            return

        self.is_processing = True
        self.cancel_event.clear()
        self.start_button.config(state='disabled', text='Processing...')
        self.cancel_button.config(state='normal', text='Cancel')
        self.progress.start(10)
        self.status_label.config(text="Status: Processing...", fg='#2E86AB')
        self._reset_live_state()
        self._append_log(f"Run started: {self.workflow.get()}")

        self._run_thread = threading.Thread(target=self.run_workflow, daemon=True)
        self._run_thread.start()

    def run_workflow(self):
        """Run the selected workflow (in separate thread)"""
        try:
            workflow = self.workflow.get()
            service = LocalFileService(self.store_root.get())
            workbook = Workbook(self.workbook_folder.get())
            policy = CollisionPolicy.parse(self.collision_policy.get())

            if workflow == WORKFLOW_MERGE:
                result = self._run_merge(service, workbook, policy)
            else:
                result = self._run_setup(workflow, service, workbook, policy)

            try:
                self.root.after(0, self.on_run_complete, result)
            except Exception:
                pass

        except Exception as e:
            try:
                self.root.after(0, self.on_run_error, str(e))
            except Exception:
                pass

    def _run_merge(self, service, workbook, policy):
        coordinator = StudentMergeCoordinator(
            service,
            workbook.prefix_rows(),
            batch_size=self.batch_size.get(),
            collision_policy=policy,
            logs_dir=os.path.join(self.workbook_folder.get(), "logs"),
        )
        reports = coordinator.run_all(
            workbook.student_rows(),
            destination_parent_container_id=self.destination.get().strip() or None,
            recursive=self.recursive.get(),
            progress_callback=self.on_progress_update,
            event_callback=self.on_run_event,
            cancel_event=self.cancel_event,
        )
        result = StudentMergeCoordinator.summarize(reports)
        result['log_path'] = coordinator.last_log_path
        return result

    def _run_setup(self, workflow, service, workbook, policy):
        roster = ClassroomExport(self.roster_export.get()) if workflow in _ROSTER_WORKFLOWS else None

        if workflow == WORKFLOW_DECLARATIONS:
            warnings = []
            processor = DeclarationProcessor(service, roster, collision_policy=policy)
            entries = processor.create_final_declaration_forms(
                workbook.course_id(),
                self.assignment_title.get().strip(),
                workbook.student_rows(),
                warnings=warnings,
            )
            for warning in warnings:
                self.on_run_event({"level": "WARNING", "event": warning["code"], "message": warning["message"]})
            created = sum(1 for entry in entries if entry.get('success'))
            return {
                'summary': {
                    'students_total': len(entries),
                    'outputs_total': created,
                    'students_failed': len(entries) - created,
                },
            }

        populator = FolderPopulator(service, roster, workbook, collision_policy=policy)
        if workflow == WORKFLOW_ROSTER:
            course_id = roster.find_course_id(self.course_url.get().strip())
            if not course_id:
                raise ValueError("Invalid course URL or course not found in the roster export.")
            counts = populator.initialize_roster(course_id, self.destination.get().strip())
        elif workflow == WORKFLOW_TEMPLATES:
            counts = populator.populate_templates()
        else:
            counts = populator.harvest_attachments(self.assignment_title.get().strip(), self.prepend.get().strip())

        for warning in counts['warnings']:
            self.on_run_event({"level": "WARNING", "event": warning["code"], "message": warning["message"]})
        return {
            'summary': {
                'outputs_total': counts['copied'],
                'categories_skipped': counts['skipped'],
                'categories_failed': counts['failed'],
            },
        }

    def on_run_complete(self, result):
        """Called when a workflow completes"""
        self.progress.stop()
        self.is_processing = False
        self.start_button.config(state='normal', text='Start')
        self.cancel_button.config(state='disabled', text='Cancel')

        was_cancelled = self.cancel_event.is_set()
        if was_cancelled:
            self.status_label.config(text="Status: Cancelled", fg='#dc3545')
        else:
            self.status_label.config(text="Status: Complete!", fg='#28a745')

        summary = result.get("summary", {})
        outputs_total = summary.get("outputs_total", 0)
        self.outputs_label.config(text=f"Outputs: {outputs_total}")
        self._append_log("Run completed." if not was_cancelled else "Run cancelled.")

        failed_preview = ""
        failed_students = [item for item in result.get("students", []) if not item.get("success")]
        if failed_students:
            preview_lines = [f"- {item['student']} ({item['error']})" for item in failed_students[:3]]
            failed_preview = "Failed students:\n" + "\n".join(preview_lines) + "\n\n"

        messagebox.showinfo(
            "Cancelled" if was_cancelled else "Success",
            f"{'Run cancelled (partial results below).' if was_cancelled else 'Run complete!'}\n\n"
            f"Students: {summary.get('students_total', 'N/A')}\n"
            f"Outputs created: {outputs_total}\n"
            f"Skipped (already existed): {summary.get('categories_skipped', 0)}\n"
            f"Failed: {summary.get('categories_failed', 0) + summary.get('students_failed', 0)}\n\n"
            f"Run log:\n{result.get('log_path') or 'N/A'}\n\n"
            f"{failed_preview}"
        )

        if messagebox.askyesno("Open Folder", "Would you like to open the document store folder?"):
            folder_path = self.store_root.get()
            try:
                if platform.system() == 'Windows':
                    os.startfile(folder_path)
                elif platform.system() == 'Darwin':  # macOS
                    subprocess.run(['open', folder_path], check=True)
                else:  # Linux and other Unix-like systems
                    subprocess.run(['xdg-open', folder_path], check=True)
            except (OSError, FileNotFoundError, subprocess.CalledProcessError):
                messagebox.showwarning("Cannot Open Folder",
                                       f"Outputs saved under:\n{folder_path}\n\n"
                                       f"Please open manually.")

    def on_run_error(self, error_msg):
        """Called when a workflow raises"""
        self.progress.stop()
        self.is_processing = False
        self.start_button.config(state='normal', text='Start')
        self.cancel_button.config(state='disabled', text='Cancel')
        self.status_label.config(text="Status: Error", fg='#dc3545')
        self._append_log(f"[ERROR] {error_msg}")

        display_msg = error_msg if len(error_msg) <= 1000 else error_msg[:1000] + "\n\n... (truncated, see run log for full error)"
        messagebox.showerror("Error", f"An error occurred:\n\n{display_msg}")


def main():
    """Main entry point"""
    root = tk.Tk()
    SampleBuilderGUI(root)
    root.mainloop()


if __name__ == "__main__":
    main()
