from __future__ import annotations

from sqlalchemy import Boolean, Column, Index, Integer, String, Text, UniqueConstraint

from db import Base


class Candidate(Base):
    __tablename__ = "candidates"
    __table_args__ = (
        UniqueConstraint("personalEmail", name="uq_candidates_personal_email"),
        UniqueConstraint("mobileNumber", name="uq_candidates_mobile"),
        # Assigned identifiers are unique when set (NULL never collides).
        UniqueConstraint("officeEmail", name="uq_candidates_office_email"),
        UniqueConstraint("employeeId", name="uq_candidates_employee_id"),
        UniqueConstraint("permanentEmployeeId", name="uq_candidates_permanent_id"),
        # Dashboard predicates are conjunctions/disjunctions over these flag sets.
        Index("ix_candidates_status_created", "status", "createdAt"),
        Index("ix_candidates_ld_sent", "ldStatus", "sentToLD"),
        Index("ix_candidates_delivery_alloc", "sentToDelivery", "allocationStatus"),
        Index("ix_candidates_hrtag_ld", "sentToHRTag", "ldStatus"),
        Index("ix_candidates_hrops_perm", "sentToHROpsFromHRTag", "permanentEmployeeId"),
        Index("ix_candidates_admin_ld", "sentToAdmin", "ldStatus"),
        Index("ix_candidates_status_delivery_ld", "status", "sentToDelivery", "ldStatus"),
    )

    candidateId = Column(String, primary_key=True)

    # Identity (immutable after submit).
    personalEmail = Column(String, nullable=False)
    mobileNumber = Column(String, nullable=False)

    # Profile.
    fullName = Column(Text, nullable=False, default="")
    gender = Column(String, nullable=False, default="")
    fatherName = Column(Text, nullable=False, default="")
    firstGraduate = Column(Boolean, nullable=False, default=False)
    experienceLevel = Column(String, nullable=False, default="", index=True)
    source = Column(String, nullable=False, default="")
    referenceName = Column(Text, nullable=False, default="")
    native = Column(Text, nullable=False, default="")
    college = Column(Text, nullable=False, default="")
    batchLabel = Column(String, nullable=False, default="")
    year = Column(String, nullable=False, default="")
    linkedinUrl = Column(Text, nullable=False, default="")
    resumeFileName = Column(Text, nullable=False, default="")
    resumePath = Column(Text, nullable=False, default="")
    submittedBy = Column(String, nullable=False, default="")
    submittedByName = Column(Text, nullable=False, default="")

    status = Column(String, nullable=False, default="submitted", index=True)
    sentToOpsAt = Column(Text, nullable=False, default="")
    sentToOpsBy = Column(String, nullable=False, default="")
    sentToOpsByName = Column(Text, nullable=False, default="")

    # Assigned identifiers.
    officeEmail = Column(String, nullable=True, default=None)
    officeEmailAssignedBy = Column(String, nullable=False, default="")
    officeEmailAssignedByName = Column(Text, nullable=False, default="")
    officeEmailAssignedAt = Column(Text, nullable=False, default="")
    employeeId = Column(String, nullable=True, default=None)
    employeeIdAssignedBy = Column(String, nullable=False, default="")
    employeeIdAssignedByName = Column(Text, nullable=False, default="")
    employeeIdAssignedAt = Column(Text, nullable=False, default="")
    permanentEmployeeId = Column(String, nullable=True, default=None)
    permanentIdAssignedBy = Column(String, nullable=False, default="")
    permanentIdAssignedByName = Column(Text, nullable=False, default="")
    permanentIdAssignedAt = Column(Text, nullable=False, default="")

    # Routing flags.
    sentToHROpsFromHRTag = Column(Boolean, nullable=False, default=False)
    sentToHROpsFromHRTagAt = Column(Text, nullable=False, default="")
    sentToHROpsFromHRTagBy = Column(String, nullable=False, default="")
    sentToHROpsFromHRTagByName = Column(Text, nullable=False, default="")
    sentToAdmin = Column(Boolean, nullable=False, default=False)
    sentToAdminAt = Column(Text, nullable=False, default="")
    sentToAdminBy = Column(String, nullable=False, default="")
    sentToAdminByName = Column(Text, nullable=False, default="")
    sentToLD = Column(Boolean, nullable=False, default=False)
    sentToLDAt = Column(Text, nullable=False, default="")
    sentToLDBy = Column(String, nullable=False, default="")
    sentToLDByName = Column(Text, nullable=False, default="")
    sentToDelivery = Column(Boolean, nullable=False, default=False)
    sentToDeliveryAt = Column(Text, nullable=False, default="")
    sentToDeliveryBy = Column(String, nullable=False, default="")
    sentToDeliveryByName = Column(Text, nullable=False, default="")
    sentToHRTag = Column(Boolean, nullable=False, default=False)
    sentToHRTagAt = Column(Text, nullable=False, default="")
    sentToHRTagBy = Column(String, nullable=False, default="")
    sentToHRTagByName = Column(Text, nullable=False, default="")

    # L&D decision.
    ldStatus = Column(String, nullable=False, default="Pending")
    ldReason = Column(String, nullable=False, default="")
    ldStatusUpdatedBy = Column(String, nullable=False, default="")
    ldStatusUpdatedByName = Column(Text, nullable=False, default="")
    ldStatusUpdatedAt = Column(Text, nullable=False, default="")

    # Rejection fan-out bookkeeping.
    routedToHRTag = Column(Boolean, nullable=False, default=False)
    routedToHROps = Column(Boolean, nullable=False, default=False)
    routedToIT = Column(Boolean, nullable=False, default=False)
    routedToAdmin = Column(Boolean, nullable=False, default=False)
    routingTimestamp = Column(Text, nullable=False, default="")
    routingReason = Column(String, nullable=False, default="")

    # Delivery allocation.
    allocationStatus = Column(String, nullable=False, default="Pending Allocation")
    allocationNotes = Column(Text, nullable=False, default="")
    assignedProject = Column(Text, nullable=False, default="")
    assignedTeam = Column(Text, nullable=False, default="")
    allocationUpdatedBy = Column(String, nullable=False, default="")
    allocationUpdatedAt = Column(Text, nullable=False, default="")

    # Deployment link.
    deploymentEmailSent = Column(Boolean, nullable=False, default=False, index=True)
    deploymentEmailSentAt = Column(Text, nullable=False, default="")
    deploymentEmailSentBy = Column(String, nullable=False, default="")
    deploymentRecordId = Column(String, nullable=False, default="")
    deploymentStatus = Column(String, nullable=False, default="")

    adminNotes = Column(Text, nullable=False, default="")
    adminNotesUpdatedBy = Column(String, nullable=False, default="")
    adminNotesUpdatedAt = Column(Text, nullable=False, default="")

    createdAt = Column(Text, nullable=False, default="", index=True)
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class Deployment(Base):
    __tablename__ = "deployments"
    __table_args__ = (
        UniqueConstraint("candidateId", name="uq_deployments_candidate"),
        Index("ix_deployments_status_exit", "status", "exitDate"),
        Index("ix_deployments_transfer_exit", "internalTransferDate", "exitDate"),
    )

    deploymentId = Column(String, primary_key=True)
    candidateId = Column(String, nullable=False)
    candidateName = Column(Text, nullable=False, default="")
    candidateEmpId = Column(String, nullable=False, default="", index=True)

    # Placement.
    role = Column(Text, nullable=False, default="")
    email = Column(String, nullable=False, default="")
    office = Column(Text, nullable=False, default="")
    modeOfHire = Column(String, nullable=False, default="")
    fromTeam = Column(Text, nullable=False, default="")
    toTeam = Column(Text, nullable=False, default="")
    client = Column(Text, nullable=False, default="", index=True)
    bu = Column(Text, nullable=False, default="", index=True)
    reportingTo = Column(Text, nullable=False, default="")
    accountManager = Column(Text, nullable=False, default="")
    deploymentDate = Column(Text, nullable=False, default="")

    # Deployment notification audit.
    emailSubject = Column(Text, nullable=False, default="Employee Deployment Notice")
    emailContent = Column(Text, nullable=False, default="")
    recipientEmailsJson = Column(Text, nullable=False, default="[]")
    ccEmailsJson = Column(Text, nullable=False, default="[]")
    sentBy = Column(String, nullable=False, default="")
    sentByName = Column(Text, nullable=False, default="")
    sentFromEmail = Column(String, nullable=False, default="")
    emailStatus = Column(String, nullable=False, default="Sent")
    emailSuccessful = Column(Integer, nullable=False, default=0)
    emailFailed = Column(Integer, nullable=False, default=0)
    emailTotal = Column(Integer, nullable=False, default=0)

    # Operational fields.
    track = Column(Text, nullable=False, default="")
    hrName = Column(Text, nullable=False, default="")
    calAdd = Column(Text, nullable=False, default="")
    dmDal = Column(Text, nullable=False, default="")
    tlLeadRec = Column(Text, nullable=False, default="")
    zoomNo = Column(String, nullable=False, default="")
    workLocation = Column(Text, nullable=False, default="")
    doj = Column(Text, nullable=False, default="")
    extension = Column(String, nullable=False, default="")
    leadOrNonLead = Column(String, nullable=False, default="")
    status = Column(String, nullable=False, default="Active")

    # Exit lifecycle.
    exitDate = Column(Text, nullable=False, default="")
    exitReason = Column(Text, nullable=False, default="")
    exitProcessedBy = Column(String, nullable=False, default="")
    exitProcessedByName = Column(Text, nullable=False, default="")
    exitProcessedAt = Column(Text, nullable=False, default="")

    # Internal transfer.
    internalTransferDate = Column(Text, nullable=False, default="")
    internalTransferEmailSent = Column(Boolean, nullable=False, default=False)
    internalTransferSubject = Column(Text, nullable=False, default="")
    internalTransferContent = Column(Text, nullable=False, default="")
    internalTransferRecipientsJson = Column(Text, nullable=False, default="[]")
    internalTransferCcJson = Column(Text, nullable=False, default="[]")
    internalTransferSentBy = Column(String, nullable=False, default="")
    internalTransferSentByName = Column(Text, nullable=False, default="")
    internalTransferSentAt = Column(Text, nullable=False, default="")

    # Candidate snapshot at deployment time.
    candidateMobile = Column(String, nullable=False, default="")
    candidateOfficeEmail = Column(String, nullable=False, default="")
    candidateExperienceLevel = Column(String, nullable=False, default="")
    candidateAssignedTeam = Column(Text, nullable=False, default="")
    candidateBatch = Column(String, nullable=False, default="")
    notes = Column(Text, nullable=False, default="")

    createdAt = Column(Text, nullable=False, default="", index=True)
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class Employee(Base):
    __tablename__ = "employees"
    __table_args__ = (UniqueConstraint("email", name="uq_employees_email"),)

    empId = Column(String, primary_key=True)
    name = Column(Text, nullable=False, default="")
    team = Column(String, nullable=False, default="", index=True)
    email = Column(String, nullable=False)
    passwordHash = Column(Text, nullable=False, default="")
    isActive = Column(Boolean, nullable=False, default=True, index=True)
    deleted = Column(Boolean, nullable=False, default=False, index=True)
    canSendEmail = Column(Boolean, nullable=False, default=False)
    isDeliveryManager = Column(Boolean, nullable=False, default=False, index=True)
    # Mailbox credentials for the delivery manager's outbound notifications.
    managerEmail = Column(String, nullable=False, default="")
    managerAppPassword = Column(Text, nullable=False, default="")
    failedAttempts = Column(Integer, nullable=False, default=0)
    lockedUntil = Column(Text, nullable=False, default="")
    lastFailedIp = Column(String, nullable=False, default="")
    lastLoginAt = Column(Text, nullable=False, default="")
    authVersion = Column(Integer, nullable=False, default=0)
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class Session(Base):
    __tablename__ = "sessions"

    sessionId = Column(String, primary_key=True)
    tokenHash = Column(String, nullable=False, unique=True, index=True)
    tokenPrefix = Column(String, nullable=False, default="", index=True)
    userId = Column(String, nullable=False, default="", index=True)
    email = Column(String, nullable=False, default="")
    name = Column(Text, nullable=False, default="")
    role = Column(String, nullable=False, default="", index=True)
    authVersion = Column(Integer, nullable=False, default=0)
    issuedAt = Column(Text, nullable=False, default="")
    expiresAt = Column(Text, nullable=False, default="")
    lastSeenAt = Column(Text, nullable=False, default="")
    revokedAt = Column(Text, nullable=False, default="")
    revokedBy = Column(String, nullable=False, default="")


class AuditLog(Base):
    __tablename__ = "audit_log"

    logId = Column(String, primary_key=True)
    entityType = Column(String, nullable=False, default="", index=True)
    entityId = Column(String, nullable=False, default="", index=True)
    action = Column(String, nullable=False, default="", index=True)
    fromState = Column(String, nullable=False, default="")
    toState = Column(String, nullable=False, default="")
    stageTag = Column(String, nullable=False, default="", index=True)
    remark = Column(Text, nullable=False, default="")
    actorUserId = Column(String, nullable=False, default="", index=True)
    actorRole = Column(String, nullable=False, default="", index=True)
    actorEmail = Column(Text, nullable=False, default="")
    at = Column(Text, nullable=False, default="", index=True)
    correlationId = Column(String, nullable=False, default="", index=True)
    metaJson = Column(Text, nullable=False, default="")
