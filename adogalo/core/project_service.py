"""
PROJECT AGGREGATE SERVICE

Project lifecycle (admin), milestone CRUD, comments on logs and the
read views (project detail, ledger, listings). Money never moves here:
creation only seeds the ledger, the retention record and the termins.
"""

from bson import ObjectId
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Any, Optional, List
import logging

from adogalo.core.access import normalize_email, ROLE_ADMIN, ROLE_MANAGER
from adogalo.core.context import EscrowContext
from adogalo.core.documents import to_object_id
from adogalo.core.errors import EscrowValidationError, NotFoundError, StateGuardError
from adogalo.core.financial_calculator import (
    calculate_project_statistics,
    check_client_funds_sufficient,
    generate_default_termins,
    get_budget_display,
    get_display_amount,
    format_currency,
    format_percent,
    CLIENT_FEE_PERCENT,
    VENDOR_FEE_PERCENT,
)
from adogalo.core.financial_precision import to_decimal, to_float, safe_add, calculate_percentage
from adogalo.core.milestone_engine import MilestoneStatus
from adogalo.core.retensi_engine import RetensiEngine, RetensiStatus, RETENTION_ACTIVE_STATUSES, new_retensi_doc
from adogalo.core.termin_engine import delete_termins, new_termin_doc, TerminType

logger = logging.getLogger(__name__)

PERCENT_TOLERANCE = Decimal('0.01')

# Children removed together with a project
CASCADE_COLLECTIONS = (
    "milestones", "logs", "termins", "retensi", "admin_data", "additional_works", "change_requests",
)


def _whole_rupiah(value) -> float:
    return float(to_decimal(value).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


class ProjectService:
    def __init__(self, ctx: EscrowContext, retensi_engine: RetensiEngine):
        self.ctx = ctx
        self.db = ctx.db
        self.retensi = retensi_engine

    # =========================================================================
    # PROJECT LIFECYCLE
    # =========================================================================

    def _validate_new_project(self, data: Dict[str, Any]):
        required = ("judul", "client_name", "client_email", "vendor_name", "vendor_email")
        if any(not (data.get(name) or "").strip() for name in required) or not data.get("budget"):
            raise EscrowValidationError("Semua field dasar harus diisi")
        if to_decimal(data["budget"]) <= 0:
            raise EscrowValidationError("Anggaran harus berupa angka positif", details={"field": "budget"})

        milestones = data.get("milestones") or []
        total = safe_add(*[m.get("persentase") or 0 for m in milestones])
        if abs(total - Decimal('100')) >= PERCENT_TOLERANCE:
            raise EscrowValidationError(
                f"Total persentase progress harus 100%. Saat ini: {format_percent(total)}",
                details={"total_persentase": float(total)}
            )
        if any(not (m.get("judul") or "").strip() for m in milestones):
            raise EscrowValidationError("Semua progress/pekerjaan harus memiliki judul")

        retensi_percent = to_decimal(data.get("retensi_percent") or 0)
        if not (0 <= retensi_percent <= 100):
            raise EscrowValidationError("Persentase retensi tidak valid", details={"field": "retensi_percent"})

    async def create_project(self, actor: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
        self.ctx.access.require_admin(actor, "Hanya admin yang bisa membuat proyek")
        self._validate_new_project(data)

        budget = to_decimal(data["budget"])
        client_fee = data.get("client_fee_percent")
        if client_fee is None:
            client_fee = CLIENT_FEE_PERCENT
        vendor_fee = data.get("vendor_fee_percent")
        if vendor_fee is None:
            vendor_fee = VENDOR_FEE_PERCENT
        retensi_percent = to_decimal(data.get("retensi_percent") or 0)
        retensi_days = int(data.get("retensi_days") or 0)

        project_oid = ObjectId()
        project_id = str(project_oid)

        async with self.ctx.transactions.project(project_id) as uow:
            session = uow.session
            now = self.ctx.now()

            project = {
                "_id": project_oid,
                "judul": data["judul"].strip(),
                "client_name": data["client_name"].strip(),
                "client_email": normalize_email(data["client_email"]),
                "vendor_name": data["vendor_name"].strip(),
                "vendor_email": normalize_email(data["vendor_email"]),
                "base_total": to_float(budget),
                "client_fee_percent": float(to_decimal(client_fee)),
                "vendor_fee_percent": float(to_decimal(vendor_fee)),
                "retensi_percent": float(retensi_percent),
                "retensi_days": retensi_days,
                "status": "active",
                "created_at": now,
                "updated_at": now,
            }
            await self.db.projects.insert_one(project, session=session)
            await self.ctx.ledger.create(project_id, session=session, now=now)

            if retensi_percent > 0 and retensi_days > 0:
                retensi = new_retensi_doc(
                    project_id, now, retensi_percent, retensi_days,
                    calculate_percentage(budget, retensi_percent), status=RetensiStatus.AGREED,
                )
            else:
                retensi = new_retensi_doc(project_id, now)
            await self.db.retensi.insert_one(retensi, session=session)

            for urutan, item in enumerate(data.get("milestones") or [], start=1):
                price = to_float(calculate_percentage(budget, item["persentase"]))
                await self.db.milestones.insert_one({
                    "project_id": project_id,
                    "judul": item["judul"].strip(),
                    "deskripsi": item.get("deskripsi"),
                    "persentase": float(to_decimal(item["persentase"])),
                    "price": price,
                    "original_price": price,
                    "status": MilestoneStatus.PENDING,
                    "is_additional_work": False,
                    "urutan": urutan,
                    "paid_at": None,
                    "created_at": now,
                    "updated_at": now,
                }, session=session)

            for config in generate_default_termins(budget, client_fee):
                await self.db.termins.insert_one(
                    new_termin_doc(
                        project_id, f"Termin {config['termin_number']}",
                        config["base_amount"], TerminType.MAIN, client_fee, now,
                    ),
                    session=session
                )

            await self.ctx.audit_action(
                actor, "PROJECT", "PROJECT", project_id, "CREATE",
                project_id=project_id,
                new_value={"judul": project["judul"], "base_total": project["base_total"]},
                session=session
            )

        logger.info(f"[PROJECT] Created project:{project_id} ({project['judul']})")
        return {"message": "Proyek berhasil dibuat", "project": project}

    async def update_project(self, project_id: str, actor: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
        self.ctx.access.require_admin(actor, "Hanya admin yang bisa mengubah proyek")

        updates = {}
        for field in ("client_email", "vendor_email"):
            value = data.get(field)
            if isinstance(value, str) and value.strip():
                updates[field] = normalize_email(value)
        for field in ("judul", "client_name", "vendor_name"):
            value = data.get(field)
            if isinstance(value, str) and value.strip():
                updates[field] = value.strip()
        if not updates:
            raise EscrowValidationError("Tidak ada data yang diubah")

        project = await self.ctx.get_project(project_id)
        async with self.ctx.transactions.project(project_id) as uow:
            updates["updated_at"] = self.ctx.now()
            await self.db.projects.update_one({"_id": project["_id"]}, {"$set": updates}, session=uow.session)
            await self.ctx.audit_action(
                actor, "PROJECT", "PROJECT", project_id, "UPDATE",
                project_id=project_id,
                old_value={field: project.get(field) for field in updates if field != "updated_at"},
                new_value={field: value for field, value in updates.items() if field != "updated_at"},
                session=uow.session
            )
            project = await self.ctx.get_project(project_id, uow.session)

        return {"message": "Proyek berhasil diperbarui", "project": project}

    async def delete_project(self, project_id: str, actor: Dict[str, Any]) -> Dict[str, Any]:
        self.ctx.access.require_admin(actor, "Hanya admin yang bisa menghapus proyek")
        project = await self.ctx.get_project(project_id)

        async with self.ctx.transactions.project(project_id) as uow:
            for name in CASCADE_COLLECTIONS:
                await self.db[name].delete_many({"project_id": project_id}, session=uow.session)
            await self.db.projects.delete_one({"_id": project["_id"]}, session=uow.session)
            await self.db.users.update_many(
                {"project_ids": project_id}, {"$pull": {"project_ids": project_id}}, session=uow.session
            )
            await self.ctx.audit_action(
                actor, "PROJECT", "PROJECT", project_id, "DELETE",
                project_id=project_id, old_value={"judul": project["judul"]},
                session=uow.session
            )

        self.ctx.transactions.forget(project_id)
        logger.info(f"[PROJECT] Deleted project:{project_id} with all children")
        return {"message": "Proyek berhasil dihapus"}

    # =========================================================================
    # READ VIEWS
    # =========================================================================

    async def list_projects(self, actor: Dict[str, Any]) -> List[Dict[str, Any]]:
        if actor.get("role") == ROLE_ADMIN:
            query = {}
        elif actor.get("role") == ROLE_MANAGER:
            ids = await self.ctx.access.manager_project_ids(actor)
            query = {"_id": {"$in": [ObjectId(i) for i in ids if ObjectId.is_valid(i)]}}
        else:
            email = normalize_email(actor.get("email"))
            query = {"$or": [{"client_email": email}, {"vendor_email": email}]}

        projects = await self.db.projects.find(query).sort("created_at", -1).to_list(length=None)
        for project in projects:
            milestones = await self.ctx.get_project_milestones(str(project["_id"]))
            stats = calculate_project_statistics(milestones, [], None)
            project["progress"] = stats["progress"]
            project["value_progress"] = stats["value_progress"]
            project["total_milestones"] = stats["total_milestones"]
            project["completed_milestones"] = stats["completed_milestones"]
            project["active_milestones"] = stats["active_milestones"]
        return projects

    async def get_project_view(self, project_id: str, actor: Dict[str, Any]) -> Dict[str, Any]:
        project = await self.ctx.get_project(project_id)
        access = await self.ctx.access.resolve(actor, project)
        access.require("admin", "manager", "client", "vendor", message="Anda tidak memiliki akses ke proyek ini")
        role = access.role

        async with self.ctx.transactions.project(project_id) as uow:
            retensi = await self.retensi.load_reconciled(project_id, uow.session)

        milestones = await self.ctx.get_project_milestones(project_id)
        termins = await self.db.termins.find({"project_id": project_id}).sort("created_at", 1).to_list(length=None)
        ledger = await self.db.admin_data.find_one({"project_id": project_id})

        retention_percent = 0
        if retensi and retensi.get("status") in RETENTION_ACTIVE_STATUSES:
            retention_percent = retensi.get("percent", 0)

        client_fee = project.get("client_fee_percent", CLIENT_FEE_PERCENT)
        vendor_fee = project.get("vendor_fee_percent", VENDOR_FEE_PERCENT)
        for milestone in milestones:
            display = get_display_amount(milestone["price"], retention_percent, role, client_fee, vendor_fee)
            milestone["display_amount"] = display["display_amount"]
            milestone["display_label"] = display["label"]
            milestone["display_breakdown"] = display["breakdown"]

        statistics = calculate_project_statistics(milestones, termins, ledger)
        next_pending = next((m for m in milestones if m["status"] == MilestoneStatus.PENDING), None)
        funds_warning = None
        if next_pending and ledger:
            check = check_client_funds_sufficient(ledger.get("client_funds", 0), next_pending["price"])
            if not check.is_sufficient:
                funds_warning = check.to_dict()
        statistics["funds_warning"] = funds_warning

        view = dict(project)
        view["milestones"] = milestones
        view["termins"] = termins
        view["retensi"] = retensi
        view["statistics"] = statistics
        view["budget_display"] = get_budget_display(project["base_total"], role, client_fee)
        view["header_values"] = {
            "vendor": (ledger or {}).get("vendor_paid", 0),
            "client": (ledger or {}).get("client_funds", 0),
            "admin": (ledger or {}).get("admin_balance", 0),
        }
        if role in ("admin", "manager"):
            view["ledger"] = ledger

        return {"project": view, "user_role": role}

    async def get_ledger_view(self, project_id: str, actor: Dict[str, Any]) -> Dict[str, Any]:
        project = await self.ctx.get_project(project_id)
        access = await self.ctx.access.resolve(actor, project)
        access.require("admin", "manager", message="Hanya admin atau manager yang bisa melihat data keuangan")

        ledger = await self.ctx.ledger.get(project_id)
        milestones = await self.ctx.get_project_milestones(project_id)
        termins = await self.db.termins.find({"project_id": project_id}).to_list(length=None)
        return {
            "ledger": ledger,
            "statistics": calculate_project_statistics(milestones, termins, ledger),
            "invariants": await self.ctx.ledger.validator.validate_project_invariants(project_id),
        }

    async def get_audit_logs(self, project_id: str, actor: Dict[str, Any], limit: int = 100) -> List[Dict[str, Any]]:
        project = await self.ctx.get_project(project_id)
        access = await self.ctx.access.resolve(actor, project)
        access.require("admin", "manager", message="Hanya admin atau manager yang bisa melihat audit log")
        return await self.ctx.audit.get_audit_logs(project_id=project_id, limit=limit)

    # =========================================================================
    # MILESTONE CRUD
    # =========================================================================

    async def list_milestones(self, project_id: str, actor: Dict[str, Any]) -> List[Dict[str, Any]]:
        project = await self.ctx.get_project(project_id)
        access = await self.ctx.access.resolve(actor, project)
        access.require("admin", "manager", "client", "vendor")

        milestones = await self.ctx.get_project_milestones(project_id)
        for milestone in milestones:
            latest = await self.db.logs.find(
                {"milestone_id": str(milestone["_id"])}
            ).sort("tanggal", -1).limit(1).to_list(length=1)
            milestone["last_log"] = latest[0] if latest else None
        return milestones

    async def get_milestone_detail(self, milestone_id: str, actor: Dict[str, Any]) -> Dict[str, Any]:
        milestone = await self.ctx.get_milestone(milestone_id)
        project = await self.ctx.get_project(milestone["project_id"])
        access = await self.ctx.access.resolve(actor, project)
        access.require("admin", "manager", "client", "vendor")

        milestone["logs"] = await self.db.logs.find(
            {"milestone_id": str(milestone["_id"])}
        ).sort("tanggal", -1).to_list(length=None)
        for log in milestone["logs"]:
            log["comments"] = sorted(log.get("comments", []), key=lambda c: c["tanggal"])
        milestone["change_requests"] = await self.db.change_requests.find(
            {"milestone_id": str(milestone["_id"])}
        ).sort("created_at", -1).to_list(length=None)
        milestone["project"] = project

        return {"milestone": milestone, "user_role": access.role}

    async def create_milestone(self, project_id: str, actor: Dict[str, Any], judul: str, persentase,
                               deskripsi: Optional[str] = None, harga=None) -> Dict[str, Any]:
        judul = (judul or "").strip()
        if not judul or persentase is None or to_decimal(persentase) <= 0:
            raise EscrowValidationError("Project ID, judul, dan persentase harus diisi")
        if harga is not None and to_decimal(harga) <= 0:
            raise EscrowValidationError("Harga milestone harus lebih dari 0", details={"field": "harga"})
        self.ctx.access.require_admin(actor, "Hanya admin yang bisa membuat pekerjaan")
        await self.ctx.get_project(project_id)

        async with self.ctx.transactions.project(project_id) as uow:
            session = uow.session
            now = self.ctx.now()
            project = await self.ctx.get_project(project_id, session)

            existing = await self.db.milestones.find(
                {"project_id": project_id, "is_additional_work": False}, session=session
            ).to_list(length=None)
            existing_total = safe_add(*[m.get("persentase") or 0 for m in existing])
            if existing_total + to_decimal(persentase) > 100:
                raise EscrowValidationError(
                    f"Total persentase akan melebihi 100%. Sisa: {format_percent(100 - existing_total)}",
                    details={"sisa_persentase": float(100 - existing_total)}
                )

            urutan = await self.ctx.next_urutan(project_id, session)
            price = to_float(harga) if harga is not None else _whole_rupiah(
                calculate_percentage(project["base_total"], persentase)
            )
            milestone = {
                "project_id": project_id,
                "judul": judul,
                "deskripsi": deskripsi,
                "persentase": float(to_decimal(persentase)),
                "price": price,
                "original_price": price,
                "status": MilestoneStatus.PENDING,
                "is_additional_work": False,
                "urutan": urutan,
                "paid_at": None,
                "created_at": now,
                "updated_at": now,
            }
            result = await self.db.milestones.insert_one(milestone, session=session)
            milestone["_id"] = result.inserted_id
            milestone_id = str(milestone["_id"])

            await self.db.termins.insert_one(
                new_termin_doc(
                    project_id, f"Termin {urutan}: {judul}", price, TerminType.MAIN,
                    project.get("client_fee_percent", CLIENT_FEE_PERCENT), now,
                    milestone_id=milestone_id,
                ),
                session=session
            )
            await self.ctx.add_log(
                project_id, "system",
                f'Pekerjaan "{judul}" dibuat dengan persentase {format_percent(persentase)} '
                f'dan nilai {format_currency(price)}',
                milestone_id=milestone_id, user_id=actor.get("user_id"),
                session=session, now=now
            )
            await self.ctx.audit_action(
                actor, "MILESTONE", "MILESTONE", milestone_id, "CREATE",
                project_id=project_id, new_value={"judul": judul, "price": price},
                session=session
            )

        return {"message": "Pekerjaan berhasil dibuat", "milestone": milestone}

    async def update_milestone(self, milestone_id: str, actor: Dict[str, Any], judul: Optional[str] = None,
                               deskripsi: Optional[str] = None, harga=None) -> Dict[str, Any]:
        if harga is not None and to_decimal(harga) <= 0:
            raise EscrowValidationError("Harga milestone harus lebih dari 0", details={"field": "harga"})
        milestone = await self.ctx.get_milestone(milestone_id)
        project_id = milestone["project_id"]

        async with self.ctx.transactions.project(project_id) as uow:
            session = uow.session
            milestone = await self.ctx.get_milestone(milestone_id, session)
            project = await self.ctx.get_project(project_id, session)
            access = await self.ctx.access.resolve(actor, project, session)
            access.require("admin", "vendor", message="Hanya vendor atau admin yang bisa mengubah milestone")

            editable = milestone["status"] in (MilestoneStatus.PENDING, MilestoneStatus.PENDING_ADDITIONAL)
            if not editable and not access.is_admin:
                raise StateGuardError(
                    "Milestone tidak bisa diubah karena sudah diproses",
                    details={"current_status": milestone["status"]}
                )
            if harga is not None and not editable:
                raise StateGuardError(
                    "Harga milestone tidak bisa diubah karena sudah diproses",
                    details={"current_status": milestone["status"]}
                )

            updates = {"updated_at": self.ctx.now()}
            if judul and judul.strip():
                updates["judul"] = judul.strip()
            if deskripsi is not None:
                updates["deskripsi"] = deskripsi
            if harga is not None:
                updates["price"] = to_float(harga)
                updates["original_price"] = to_float(harga)

            await self.db.milestones.update_one({"_id": milestone["_id"]}, {"$set": updates}, session=session)
            await self.ctx.audit_action(
                actor, "MILESTONE", "MILESTONE", milestone["_id"], "UPDATE",
                project_id=project_id,
                old_value={field: milestone.get(field) for field in updates if field != "updated_at"},
                new_value={field: value for field, value in updates.items() if field != "updated_at"},
                session=session
            )
            milestone = await self.ctx.get_milestone(milestone_id, session)

        return {"message": "Milestone berhasil diperbarui", "milestone": milestone}

    async def delete_milestone(self, milestone_id: str, actor: Dict[str, Any]) -> Dict[str, Any]:
        self.ctx.access.require_admin(actor, "Hanya admin yang bisa menghapus milestone")
        milestone = await self.ctx.get_milestone(milestone_id)
        project_id = milestone["project_id"]

        async with self.ctx.transactions.project(project_id) as uow:
            session = uow.session
            milestone = await self.ctx.get_milestone(milestone_id, session)
            if milestone["status"] != MilestoneStatus.PENDING:
                raise StateGuardError(
                    "Milestone tidak bisa dihapus karena sudah diproses",
                    details={"current_status": milestone["status"]}
                )

            result = await self.db.milestones.delete_one(
                {"_id": milestone["_id"], "status": MilestoneStatus.PENDING}, session=session
            )
            if result.deleted_count == 0:
                raise StateGuardError("Milestone tidak bisa dihapus karena sudah diproses")
            await self.db.logs.delete_many({"milestone_id": milestone_id}, session=session)
            await delete_termins(
                self.ctx, actor,
                {"milestone_id": milestone_id, "type": TerminType.MAIN, "status": "unpaid"},
                session=session
            )
            await self.ctx.audit_action(
                actor, "MILESTONE", "MILESTONE", milestone_id, "DELETE",
                project_id=project_id, old_value={"judul": milestone["judul"], "price": milestone["price"]},
                session=session
            )

        return {"message": "Milestone berhasil dihapus"}

    # =========================================================================
    # COMMENTS
    # =========================================================================

    async def add_comment(self, log_id: str, actor: Dict[str, Any], teks: Optional[str] = None,
                          files: Optional[list] = None, reply_to: Optional[str] = None) -> Dict[str, Any]:
        if not (teks or "").strip() and not files:
            raise EscrowValidationError("Log ID dan teks/file diperlukan")

        oid = to_object_id(log_id, "Log tidak ditemukan")
        log = await self.db.logs.find_one({"_id": oid})
        if not log:
            raise NotFoundError("Log tidak ditemukan", details={"log_id": log_id})

        project = await self.ctx.get_project(log["project_id"])
        access = await self.ctx.access.resolve(actor, project)
        access.require("admin", "manager", "client", "vendor")

        email = normalize_email(actor.get("email"))
        nama = email
        if access.is_client:
            nama = project["client_name"]
        elif access.is_vendor:
            nama = project["vendor_name"]
        user = await self.db.users.find_one({"email": email})
        if user and user.get("nama"):
            nama = user["nama"]

        comment = {
            "_id": ObjectId(),
            "user_id": actor.get("user_id") or email,
            "nama": nama,
            "teks": teks or "",
            "files": list(files or []),
            "reply_to": reply_to,
            "tanggal": self.ctx.now(),
        }
        await self.db.logs.update_one({"_id": oid}, {"$push": {"comments": comment}})
        return {"message": "Komentar berhasil ditambahkan", "comment": comment}
